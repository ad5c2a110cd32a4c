import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from depsync.config import (
    DEFAULT_REGISTRY_URL,
    DEFAULT_TIMEOUT_S,
    Config,
    config_path,
    load_config,
    save_config,
    with_env_overrides,
)


class TestLoadConfig(unittest.TestCase):
    def test_missing_file_gives_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            self.assertEqual(load_config(Path(td) / "config.json"), Config())

    def test_values_are_normalized(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(
                json.dumps(
                    {
                        "registry_url": "https://npm.internal.example",
                        "timeout_s": "12",
                        "print_npm_calls": "true",
                        "npm_path": "",
                        "unknown": "ignored",
                    }
                ),
                encoding="utf-8",
            )

            cfg = load_config(path)

        self.assertEqual(cfg.registry_url, "https://npm.internal.example/")
        self.assertEqual(cfg.timeout_s, 12.0)
        self.assertTrue(cfg.print_npm_calls)
        self.assertIsNone(cfg.npm_path)

    def test_bad_values_fall_back_to_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "config.json"
            path.write_text(
                json.dumps({"registry_url": "registry.npmjs.org", "timeout_s": -1, "node_path": 3}),
                encoding="utf-8",
            )

            cfg = load_config(path)

        self.assertEqual(cfg.registry_url, DEFAULT_REGISTRY_URL)
        self.assertEqual(cfg.timeout_s, DEFAULT_TIMEOUT_S)
        self.assertIsNone(cfg.node_path)

    def test_save_then_load(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = Path(td) / "nested" / "config.json"
            cfg = Config(npm_path="/opt/npm", compatibility_version="v18.17.*")

            self.assertEqual(save_config(cfg, path), path)
            self.assertEqual(load_config(path), cfg)
            self.assertFalse(path.with_suffix(".json.tmp").exists())

    def test_env_var_selects_config_file(self) -> None:
        with patch.dict(os.environ, {"DEPSYNC_CONFIG_PATH": "/etc/depsync.json"}):
            self.assertEqual(config_path(), Path("/etc/depsync.json"))


class TestEnvOverrides(unittest.TestCase):
    def test_environment_beats_file_values(self) -> None:
        base = Config(npm_path="/file/npm", registry_url="https://file.example/")
        env = {
            "DEPSYNC_NPM_PATH": "/env/npm",
            "DEPSYNC_REGISTRY_URL": "https://env.example",
            "DEPSYNC_TIMEOUT_S": "not-a-number",
        }

        cfg = with_env_overrides(base, env)

        self.assertEqual(cfg.npm_path, "/env/npm")
        self.assertEqual(cfg.registry_url, "https://env.example/")
        self.assertEqual(cfg.timeout_s, DEFAULT_TIMEOUT_S)

    def test_empty_variables_are_ignored(self) -> None:
        base = Config(node_path="/file/node")

        self.assertEqual(with_env_overrides(base, {"DEPSYNC_NODE_PATH": ""}), base)


if __name__ == "__main__":
    unittest.main()
