import json
import os
import shutil
import unittest
from pathlib import Path
from unittest.mock import patch
from uuid import uuid4

from sitechat.app_config import (
    _to_bool,
    load_json_config,
    orchestrator_settings,
    parse_app_config,
    resolve_runtime_env,
)
from sitechat.bootstrap import bootstrap_runtime
from sitechat.logging_config import setup_logging
from sitechat.persistence import InMemoryPendingInjectionStore, SqlitePendingInjectionStore

PROJECT_ROOT = Path(__file__).resolve().parents[1]


class AppConfigTests(unittest.TestCase):
    def test_defaults(self) -> None:
        app = parse_app_config({})

        self.assertEqual("anthropic", app.provider_name)
        self.assertEqual(190_000, app.token_ceiling)
        self.assertEqual(150_000, app.token_warning_threshold)
        self.assertEqual(3, app.preserved_tail_messages)
        self.assertEqual(4, app.max_segments)
        self.assertEqual(45_000, app.stream_timeout_ms)
        self.assertEqual(2, app.max_stream_retries)
        self.assertEqual(600, app.pending_injection_ttl_seconds)
        self.assertTrue(app.persistence_enabled)
        self.assertIn("finalizeCollection", app.session_mutating_tools)

    def test_overrides_and_settings(self) -> None:
        app = parse_app_config({
            "Provider": " OpenAI ",
            "Model": "gpt-4o",
            "MaxSegments": "6",
            "StreamTimeoutMs": 1000,
            "StreamRetryBaseDelayMs": 250,
            "PersistenceEnabled": "no",
            "SessionMutatingTools": ["collectDescription"],
        })

        settings = orchestrator_settings(app)

        self.assertEqual("openai", app.provider_name)
        self.assertFalse(app.persistence_enabled)
        self.assertEqual(6, settings.max_segments)
        self.assertEqual(1000, settings.stream_timeout_ms)
        self.assertEqual(250, settings.stream_retry_base_delay_ms)
        self.assertEqual(30_000, settings.stream_retry_max_delay_ms)
        self.assertEqual("gpt-4o", settings.model)
        self.assertEqual(frozenset({"collectDescription"}), settings.session_mutating_tools)

    def test_warning_threshold_above_ceiling_is_rejected(self) -> None:
        with self.assertRaises(ValueError):
            parse_app_config({"TokenCeiling": 1000, "TokenWarningThreshold": 2000})

    def test_to_bool(self) -> None:
        self.assertTrue(_to_bool("yes"))
        self.assertFalse(_to_bool("off", default=True))
        self.assertTrue(_to_bool(None, default=True))

    def test_load_json_config(self) -> None:
        tmp = PROJECT_ROOT / ".test-artifacts" / f"config-{uuid4().hex}"
        tmp.mkdir(parents=True, exist_ok=True)
        try:
            path = tmp / "config.json"
            path.write_text(json.dumps({"Port": 9000}))
            self.assertEqual({"Port": 9000}, load_json_config(path))
            self.assertEqual({}, load_json_config(tmp / "missing.json"))
        finally:
            shutil.rmtree(tmp, ignore_errors=True)

    def test_runtime_env_collects_available_keys(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "a-key", "OPENAI_API_KEY": ""}, clear=False):
            env = resolve_runtime_env("openai")

        self.assertEqual({"anthropic": "a-key"}, env.provider_api_keys)
        self.assertEqual("OPENAI_API_KEY", env.default_provider_env_var)


class BootstrapTests(unittest.TestCase):
    def test_requires_key_for_default_provider(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "", "OPENAI_API_KEY": ""}, clear=False):
            env = resolve_runtime_env("anthropic")
        with self.assertRaises(ValueError):
            bootstrap_runtime(parse_app_config({}), env, configure_logging=False)

    def test_in_memory_runtime(self) -> None:
        with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "test-key"}, clear=False):
            env = resolve_runtime_env("anthropic")
        runtime = bootstrap_runtime(parse_app_config({"PersistenceEnabled": False}), env, configure_logging=False)

        self.assertIsNone(runtime.memory_store)
        self.assertIsInstance(runtime.injection_store, InMemoryPendingInjectionStore)
        self.assertIn("anthropic", runtime.providers)
        runtime.close()

    def test_sqlite_runtime(self) -> None:
        tmp = PROJECT_ROOT / ".test-artifacts" / f"bootstrap-{uuid4().hex}"
        try:
            with patch.dict(os.environ, {"OPENAI_API_KEY": "test-key"}, clear=False):
                env = resolve_runtime_env("openai")
            app = parse_app_config({"Provider": "openai", "MemoryDbPath": str(tmp / "db.sqlite")})
            runtime = bootstrap_runtime(app, env, configure_logging=False)
            try:
                self.assertIsInstance(runtime.injection_store, SqlitePendingInjectionStore)
                self.assertTrue((tmp / "db.sqlite").exists())
            finally:
                runtime.close()
        finally:
            shutil.rmtree(tmp, ignore_errors=True)


class LoggingConfigTests(unittest.TestCase):
    def tearDown(self) -> None:
        setup_logging("WARNING", [{"type": "console"}])

    def test_unknown_consumers_are_skipped(self) -> None:
        descriptions = setup_logging("DEBUG", [{"type": "console"}, {"type": "carrier-pigeon"}])
        self.assertEqual(["console (stderr, DEBUG)"], descriptions)

    def test_file_consumer(self) -> None:
        tmp = PROJECT_ROOT / ".test-artifacts" / f"logs-{uuid4().hex}"
        try:
            descriptions = setup_logging("INFO", [{"type": "file", "path": str(tmp / "sitechat.log")}])
            self.assertEqual([f"file ({tmp / 'sitechat.log'}, text, INFO)"], descriptions)
        finally:
            setup_logging("WARNING", [{"type": "console"}])
            shutil.rmtree(tmp, ignore_errors=True)


if __name__ == "__main__":
    unittest.main()
