import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from depsync.cli import _load_dependencies, _merge_cfg, build_parser, main
from depsync.config import DEFAULT_REGISTRY_URL, Config, load_config
from depsync.installer import DepsyncError, ListResult
from depsync.npm_dir import ReconcileResult, Status
from depsync.tree import parse_installed_tree


class TestLoadDependencies(unittest.TestCase):
    def test_merges_file_and_positional_pairs(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            deps_file = Path(td) / "package.json"
            deps_file.write_text(json.dumps({"name": "x", "dependencies": {"gcd": "1.0.0", "tar": "0.1.6"}}), encoding="utf-8")
            args = build_parser().parse_args(["update", str(Path(td) / ".npm"), "tar=0.1.7", "--deps", str(deps_file)])

            self.assertEqual(_load_dependencies(args), {"gcd": "1.0.0", "tar": "0.1.7"})

    def test_rejects_malformed_pair(self) -> None:
        args = build_parser().parse_args(["update", ".npm", "gcd"])
        with self.assertRaises(DepsyncError):
            _load_dependencies(args)

    def test_rejects_non_string_versions(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            deps_file = Path(td) / "deps.json"
            deps_file.write_text(json.dumps({"gcd": 1}), encoding="utf-8")
            args = build_parser().parse_args(["update", ".npm", "--deps", str(deps_file)])

            with self.assertRaises(DepsyncError):
                _load_dependencies(args)


class TestMergeConfig(unittest.TestCase):
    def test_cli_overrides_env_overrides_file(self) -> None:
        base = Config(npm_path="/file/npm", registry_url="https://file.example/", timeout_s=5.0)
        args = build_parser().parse_args(["update", ".npm", "--npm-path", "/cli/npm"])

        with patch.dict(os.environ, {"DEPSYNC_REGISTRY_URL": "https://env.example/", "DEPSYNC_TIMEOUT_S": "7"}):
            cfg = _merge_cfg(base, args)

        self.assertEqual(cfg.npm_path, "/cli/npm")
        self.assertEqual(cfg.registry_url, "https://env.example/")
        self.assertEqual(cfg.timeout_s, 7.0)


class TestUpdateCommand(unittest.TestCase):
    def test_update_builds_manager_and_prints_json(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            npm_dir = Path(td) / "widgets" / ".npm"
            result = ReconcileResult(
                status=Status.SUCCESS,
                npm_dir=npm_dir,
                installed=("gcd@1.0.0",),
                created=True,
            )
            with (
                patch.dict(os.environ, {"DEPSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
                patch("depsync.cli.NpmDirectoryManager") as mock_manager_cls,
                patch("sys.stdout", new=io.StringIO()) as stdout,
                patch("sys.stderr", new=io.StringIO()),
            ):
                mock_manager = mock_manager_cls.return_value
                mock_manager.update_dependencies.return_value = result
                rc = main(["update", str(npm_dir), "gcd=1.0.0", "--json"])

            self.assertEqual(rc, 0)
            call = mock_manager.update_dependencies.call_args
            self.assertEqual(call.args[0], "widgets")
            self.assertEqual(call.args[2], {"gcd": "1.0.0"})
            self.assertEqual(mock_manager_cls.call_args.kwargs["registry_url"], DEFAULT_REGISTRY_URL)
            payload = json.loads(stdout.getvalue())
            self.assertEqual(payload["status"], "success")
            self.assertTrue(payload["changed"])
            self.assertEqual(payload["installed"], ["gcd@1.0.0"])

    def test_recoverable_failure_exits_nonzero(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            npm_dir = Path(td) / "widgets" / ".npm"
            result = ReconcileResult(
                status=Status.RECOVERABLE_FAILURE,
                npm_dir=npm_dir,
                errors=("there is no npm package named 'nope'",),
            )
            with (
                patch.dict(os.environ, {"DEPSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
                patch("depsync.cli.NpmDirectoryManager") as mock_manager_cls,
                patch("sys.stdout", new=io.StringIO()),
                patch("sys.stderr", new=io.StringIO()) as stderr,
            ):
                mock_manager_cls.return_value.update_dependencies.return_value = result
                rc = main(["update", str(npm_dir), "nope=1.0.0", "--package", "acme:widgets"])

            self.assertEqual(rc, 1)
            self.assertEqual(mock_manager_cls.return_value.update_dependencies.call_args.args[0], "acme:widgets")
            self.assertIn("error: there is no npm package named 'nope'", stderr.getvalue())

    def test_bad_dependency_argument_is_reported(self) -> None:
        with patch("sys.stdout", new=io.StringIO()), patch("sys.stderr", new=io.StringIO()) as stderr:
            rc = main(["update", ".npm", "gcd"])

        self.assertEqual(rc, 1)
        self.assertIn("error: Expected name=version", stderr.getvalue())


class TestPortableCommand(unittest.TestCase):
    def test_native_module_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            npm_dir = Path(td) / ".npm"
            native = npm_dir / "node_modules" / "fibers" / "fibers.node"
            native.parent.mkdir(parents=True)
            native.write_bytes(b"\x7fELF")

            with patch("sys.stdout", new=io.StringIO()) as stdout, patch("sys.stderr", new=io.StringIO()):
                rc = main(["portable", str(npm_dir), "--json"])

        self.assertEqual(rc, 1)
        self.assertFalse(json.loads(stdout.getvalue())["portable"])

    def test_checkout_without_node_modules_is_portable(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            npm_dir = Path(td) / ".npm"
            npm_dir.mkdir()
            (npm_dir / "npm-shrinkwrap.json").write_text("{}\n", encoding="utf-8")

            with patch("sys.stdout", new=io.StringIO()) as stdout, patch("sys.stderr", new=io.StringIO()):
                rc = main(["portable", str(npm_dir)])

        self.assertEqual(rc, 0)
        self.assertEqual(stdout.getvalue().strip(), "portable")

    def test_missing_directory_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with patch("sys.stdout", new=io.StringIO()), patch("sys.stderr", new=io.StringIO()) as stderr:
                rc = main(["portable", str(Path(td) / ".npm")])

        self.assertEqual(rc, 1)
        self.assertIn("error: Not a directory:", stderr.getvalue())


class TestInstalledCommand(unittest.TestCase):
    def test_lists_top_level_canonical_versions(self) -> None:
        tree = parse_installed_tree({"dependencies": {"gcd": {"version": "1.0.0", "dependencies": {"x": {"version": "2"}}}}})
        with tempfile.TemporaryDirectory() as td:
            with (
                patch.dict(os.environ, {"DEPSYNC_CONFIG_PATH": str(Path(td) / "config.json")}),
                patch("depsync.cli.NpmInstaller") as mock_installer_cls,
                patch("sys.stdout", new=io.StringIO()) as stdout,
                patch("sys.stderr", new=io.StringIO()),
            ):
                mock_installer_cls.return_value.list_installed.return_value = ListResult(tree=tree)
                rc = main(["installed", str(Path(td) / ".npm"), "--json"])

        self.assertEqual(rc, 0)
        self.assertEqual(json.loads(stdout.getvalue()), {"gcd": "1.0.0"})


class TestConfigCommand(unittest.TestCase):
    def test_set_then_show(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            cfg_path = Path(td) / "nested" / "config.json"
            with (
                patch.dict(os.environ, {"DEPSYNC_CONFIG_PATH": str(cfg_path)}),
                patch("sys.stdout", new=io.StringIO()) as stdout,
                patch("sys.stderr", new=io.StringIO()),
            ):
                rc = main(["config", "set", "--registry-url", "https://npm.internal.example/", "--print-npm-calls", "true"])
                self.assertEqual(rc, 0)
                self.assertIn(f"Saved: {cfg_path}", stdout.getvalue())

                cfg = load_config()
                self.assertEqual(cfg.registry_url, "https://npm.internal.example/")
                self.assertTrue(cfg.print_npm_calls)

                stdout.truncate(0)
                stdout.seek(0)
                rc = main(["config", "show"])

            self.assertEqual(rc, 0)
            self.assertEqual(json.loads(stdout.getvalue())["registry_url"], "https://npm.internal.example/")


if __name__ == "__main__":
    unittest.main()
