def build_system_prompt(
    chat_mode: str = "build",
    *,
    summary: str | None = None,
    context_files: dict[str, str] | None = None,
) -> str:
    prompt = """\
You are a website-building assistant. You help the user plan, generate and edit \
a website through conversation.

Be concise in your responses. When you have completed a change, briefly summarize what you did."""

    if chat_mode == "discuss":
        prompt += """

You are in discuss mode: answer questions and propose plans, but do not call tools \
or write files."""

    if summary:
        prompt += f"""

Summary of the conversation so far:
{summary}"""

    if context_files:
        blocks = "\n\n".join(f"--- {path} ---\n{content}" for path, content in context_files.items())
        prompt += f"""

Relevant project files:
{blocks}"""

    return prompt
