from __future__ import annotations

import re
from dataclasses import dataclass, field
from fnmatch import fnmatch

from loguru import logger

from sitechat.models import Message

PROJECT_ROOT = "/home/project/"

DEFAULT_MAX_FILES = 12

CORE_WEIGHT = 10
RECENTLY_EDITED_WEIGHT = 8
KEYWORD_WEIGHT = 5
CHAT_MENTION_WEIGHT = 3

IGNORE_PATTERNS = (
    "node_modules/*",
    ".git/*",
    "dist/*",
    "build/*",
    ".next/*",
    "coverage/*",
    ".cache/*",
    "*.log",
    "*.lock",
    "package-lock.json",
    "pnpm-lock.yaml",
    "yarn.lock",
    ".DS_Store",
    "*.png",
    "*.jpg",
    "*.jpeg",
    "*.gif",
    "*.ico",
    "*.woff",
    "*.woff2",
)

CORE_PATTERNS = ("pages/", "App.tsx", "main.tsx", "index.css", "styles/", "data/", "Layout", "Footer")

_STYLE_FILES = ("index.css", "styles/", "tailwind.config")
_MENU_FILES = ("Menu", "MenuPreview", "data/")
_CONTACT_FILES = ("Footer", "Contact", "data/")
_BOOKING_FILES = ("Reservation", "Book", "CTA")

KEYWORD_MAP: dict[str, tuple[str, ...]] = {
    "header": ("Hero", "Layout", "Navbar", "Header"),
    "hero": ("Hero", "Home"),
    "menu": _MENU_FILES,
    "navigation": ("Layout", "Navbar", "Nav", "Header"),
    "nav": ("Layout", "Navbar", "Nav", "Header"),
    "logo": ("Layout", "Hero", "Header", "Navbar"),
    "footer": ("Footer",),
    "about": ("About", "Story"),
    "story": ("Story", "About"),
    "color": _STYLE_FILES + ("guidelines/", "theme"),
    "colour": _STYLE_FILES + ("guidelines/", "theme"),
    "font": _STYLE_FILES + ("typography",),
    "style": _STYLE_FILES,
    "theme": ("styles/", "guidelines/", "tailwind.config", "theme"),
    "background": ("index.css", "styles/", "Hero", "Layout"),
    "css": _STYLE_FILES,
    "button": ("Hero", "ui/Button", "Button", "CTA"),
    "headline": ("Hero", "Home"),
    "title": ("Hero", "Home", "Layout"),
    "banner": ("Hero", "Banner"),
    "image": ("Hero", "Gallery", "About", "Menu"),
    "photo": ("Hero", "Gallery", "About"),
    "dish": _MENU_FILES,
    "food": _MENU_FILES,
    "price": _MENU_FILES,
    "item": _MENU_FILES,
    "category": _MENU_FILES,
    "contact": _CONTACT_FILES,
    "hours": ("Footer", "Hours", "data/"),
    "address": _CONTACT_FILES,
    "phone": _CONTACT_FILES,
    "email": _CONTACT_FILES,
    "location": ("Footer", "Contact", "Map", "data/"),
    "map": ("Map", "Contact", "Footer"),
    "feature": ("Feature", "Features"),
    "service": ("Feature", "Service", "Services"),
    "gallery": ("Gallery", "Photos"),
    "reservation": _BOOKING_FILES,
    "book": _BOOKING_FILES,
    "social": ("Footer", "Social"),
    "instagram": ("Footer", "Social"),
    "facebook": ("Footer", "Social"),
    "layout": ("Layout", "App"),
    "page": ("pages/", "Home", "App"),
    "section": ("Hero", "About", "Menu", "Feature", "Footer"),
    "text": ("Hero", "About", "data/"),
    "copy": ("Hero", "About", "data/"),
    "tagline": ("Hero", "Home"),
    "home": ("Home", "pages/", "index"),
    "landing": ("Home", "pages/", "Hero"),
}

# Quoted strings, hex colours and prices
_GREP_PATTERN = re.compile(r"""["']([^"']+)["']|#[0-9A-Fa-f]{3,6}|\$\d+(?:\.\d{2})?""")


class ContextSelectionError(Exception):
    pass


@dataclass
class ScoredFile:
    path: str
    score: int = 0
    signals: list[str] = field(default_factory=list)


def relative_path(path: str) -> str:
    return path[len(PROJECT_ROOT):] if path.startswith(PROJECT_ROOT) else path.lstrip("/")


def is_ignored(path: str) -> bool:
    rel = relative_path(path)
    return any(fnmatch(rel, pattern) or fnmatch(rel.rsplit("/", 1)[-1], pattern) for pattern in IGNORE_PATTERNS)


def extract_patterns(user_message: str) -> list[str]:
    patterns: list[str] = []
    for match in _GREP_PATTERN.finditer(user_message):
        value = match.group(1) if match.group(1) is not None else match.group(0)
        if value not in patterns:
            patterns.append(value)
    return patterns


def grep_for_specific_text(user_message: str, files: dict[str, str]) -> list[str]:
    patterns = extract_patterns(user_message)
    if not patterns:
        return []
    return [path for path, content in files.items() if any(p in content for p in patterns)]


def score_files(
    user_message: str,
    paths: list[str],
    *,
    recently_edited: list[str] = (),
    chat_history: list[str] = (),
) -> list[ScoredFile]:
    scores: dict[str, ScoredFile] = {}

    def add(path: str, points: int, signal: str) -> None:
        entry = scores.setdefault(path, ScoredFile(path))
        entry.score += points
        entry.signals.append(signal)

    for path in paths:
        if any(pattern in path for pattern in CORE_PATTERNS):
            add(path, CORE_WEIGHT, "core")

    query = user_message.lower()
    for keyword, patterns in KEYWORD_MAP.items():
        if keyword not in query:
            continue
        for pattern in patterns:
            for path in paths:
                if pattern in path:
                    add(path, KEYWORD_WEIGHT, f"keyword:{keyword}")

    for edited in recently_edited:
        match = next((p for p in paths if p == edited or p.endswith(edited) or edited.endswith(p)), None)
        if match is not None:
            add(match, RECENTLY_EDITED_WEIGHT, "recentlyEdited")

    if chat_history:
        chat_text = " ".join(chat_history).lower()
        for path in paths:
            basename = path.rsplit("/", 1)[-1].rsplit(".", 1)[0].lower()
            if len(basename) > 2 and basename in chat_text:
                add(path, CHAT_MENTION_WEIGHT, "chatMention")

    return sorted((f for f in scores.values() if f.score > 0), key=lambda f: f.score, reverse=True)


def select_context(
    messages: list[Message],
    files: dict[str, str],
    *,
    recently_edited: list[str] = (),
    max_files: int = DEFAULT_MAX_FILES,
) -> dict[str, str]:
    """Pick the project files most relevant to the latest user message.

    Local scoring only, no model call. Returns relative path -> content.
    """
    user_messages = [m.content for m in messages if m.role == "user"]
    if not user_messages:
        raise ContextSelectionError("No user message found")
    query = user_messages[-1]

    paths = [p for p in files if not is_ignored(p)]
    scored = score_files(query, paths, recently_edited=list(recently_edited), chat_history=user_messages)
    selected = [f.path for f in scored[:max_files]]
    for path in grep_for_specific_text(query, {p: files[p] for p in paths}):
        if path not in selected:
            selected.append(path)

    if not selected:
        raise ContextSelectionError("Context selection failed to find relevant files")

    logger.debug(
        f"Context selection: {len(selected)} of {len(paths)} files; "
        f"top={[(relative_path(f.path), f.score) for f in scored[:3]]}"
    )
    return {relative_path(path): files[path] for path in selected}
