import io
import json
import tempfile
import unittest
from pathlib import Path

from fakes import SYSTEM, FakeNix, FakeSearch, commit_for, make_project, make_version, store_path

from pkgbox.cancel import CancelToken
from pkgbox.client import SearchHTTPError
from pkgbox.errors import (
    CancelledError,
    DownstreamToolError,
    InstallationError,
    NotFoundError,
    PlatformIncompatibleError,
    ValidationError,
)
from pkgbox.lockfile import LOCAL_LOCK_PATH
from pkgbox.plugins import VIRTENV_PATH, Plugin, PluginManager
from pkgbox.project import SESSION_ENV, AddOpts, Project
from pkgbox.resolver import DEFAULT_NIXPKGS_COMMIT


def _search() -> FakeSearch:
    return FakeSearch(
        {
            "foo": [make_version("foo", "2.0"), make_version("foo", "1.0")],
            "bar": [make_version("bar", "3.1")],
        }
    )


def _out(name: str, version: str) -> str:
    return make_version(name, version).systems[SYSTEM].outputs[0].path


class _ProjectTestCase(unittest.TestCase):
    def setUp(self) -> None:
        td = tempfile.TemporaryDirectory()
        self.addCleanup(td.cleanup)
        self.root = Path(td.name).resolve()
        self.search = _search()
        self.nix = FakeNix()

    def project(self, **kwargs) -> Project:
        return make_project(self.root, search=self.search, nix=self.nix, **kwargs)

    def manifest_json(self) -> dict:
        return json.loads((self.root / "pkgbox.json").read_text(encoding="utf-8"))

    def lock_json(self) -> dict:
        return json.loads((self.root / "pkgbox.lock").read_text(encoding="utf-8"))

    def profile_paths(self) -> set[str]:
        return {p for element in self.nix.elements.values() for p in element["storePaths"]}


class TestAdd(_ProjectTestCase):
    def test_add_records_and_builds_outside_a_session(self) -> None:
        stderr = io.StringIO()
        result = self.project(stderr=stderr).add(["foo@1.0"])

        self.assertEqual(result.added, ("foo@1.0",))
        self.assertEqual(self.manifest_json(), {"packages": ["foo@1.0"]})
        locked = self.lock_json()["packages"]["foo@1.0"]
        self.assertEqual(locked["version"], "1.0")
        self.assertEqual(locked["resolved"], f"github:NixOS/nixpkgs/{commit_for('foo', '1.0')}#foo")
        self.assertEqual(
            self.nix.built,
            [[f"github:NixOS/nixpkgs/{commit_for('foo', '1.0')}#legacyPackages.{SYSTEM}.foo"]],
        )
        # The profile is only touched inside a session.
        self.assertEqual(self.nix.elements, {})
        self.assertFalse((self.root / LOCAL_LOCK_PATH).exists())
        self.assertIn('Info: Adding package "foo@1.0" to pkgbox.json', stderr.getvalue())

    def test_unversioned_name_is_recorded_as_latest(self) -> None:
        self.project().add(["bar"])
        self.assertEqual(self.manifest_json()["packages"], ["bar@latest"])
        self.assertEqual(self.lock_json()["packages"]["bar@latest"]["version"], "3.1")

    def test_adding_twice_is_unchanged(self) -> None:
        self.project().add(["foo@1.0", "foo@1.0"])
        stderr = io.StringIO()
        result = self.project(stderr=stderr).add(["foo@1.0"])

        self.assertEqual(result.added, ())
        self.assertEqual(result.unchanged, ("foo@1.0",))
        self.assertEqual(self.manifest_json()["packages"], ["foo@1.0"])
        self.assertEqual(list(self.lock_json()["packages"]), ["foo@1.0"])
        self.assertIn('Package "foo@1.0" was already in pkgbox.json and was not modified', stderr.getvalue())

    def test_new_version_replaces_old_one(self) -> None:
        self.project().add(["foo@1.0"])
        self.project().ensure()
        self.assertEqual(self.profile_paths(), {_out("foo", "1.0")})

        result = self.project().add(["foo@2.0"])

        self.assertEqual(result.replaced, ("foo@1.0",))
        self.assertEqual(self.manifest_json()["packages"], ["foo@2.0"])
        self.assertEqual(list(self.lock_json()["packages"]), ["foo@2.0"])

        self.project().ensure()
        self.assertEqual(self.profile_paths(), {_out("foo", "2.0")})

    def test_unknown_package_lists_available_versions(self) -> None:
        with self.assertRaises(NotFoundError) as ctx:
            self.project().add(["foo@9"])
        self.assertEqual(str(ctx.exception), "Package foo@9 not found. Available versions: 2.0, 1.0")
        self.assertFalse((self.root / "pkgbox.json").exists())
        self.assertFalse((self.root / "pkgbox.lock").exists())

    def test_falls_back_to_legacy_nixpkgs(self) -> None:
        self.nix.known_attrs.add("hello")
        self.project().add(["hello"])

        self.assertEqual(self.manifest_json()["packages"], ["hello"])
        locked = self.lock_json()["packages"]["hello"]
        self.assertEqual(locked["resolved"], f"github:NixOS/nixpkgs/{DEFAULT_NIXPKGS_COMMIT}#hello")
        self.assertEqual(self.nix.prefetched, [f"github:NixOS/nixpkgs/{DEFAULT_NIXPKGS_COMMIT}"])
        self.assertEqual(
            self.nix.built,
            [[f"github:NixOS/nixpkgs/{DEFAULT_NIXPKGS_COMMIT}#legacyPackages.{SYSTEM}.hello"]],
        )

    def test_legacy_package_in_profile_is_not_rebuilt(self) -> None:
        self.nix.known_attrs.add("hello")
        self.project().add(["hello"])
        self.project().ensure()
        url = f"github:NixOS/nixpkgs/{DEFAULT_NIXPKGS_COMMIT}"
        self.assertEqual(self.profile_paths(), {store_path(url, f"legacyPackages.{SYSTEM}.hello")})

        self.assertEqual(self.project().packages_to_install_in_profile(SYSTEM, token=CancelToken()), [])

        self.project().add(["foo@1.0"])
        self.assertEqual(
            self.nix.built[-1],
            [f"github:NixOS/nixpkgs/{commit_for('foo', '1.0')}#legacyPackages.{SYSTEM}.foo"],
        )

    def test_package_built_only_elsewhere_can_exclude_this_platform(self) -> None:
        self.search.packages["foo"] = [make_version("foo", "1.0", systems=("aarch64-darwin",))]

        result = self.project().add(["foo@1.0"], AddOpts(exclude_platforms=(SYSTEM,)))

        self.assertEqual(result.added, ("foo@1.0",))
        self.assertEqual(
            self.manifest_json()["packages"],
            [{"name": "foo@1.0", "excluded_platforms": [SYSTEM]}],
        )
        locked = self.lock_json()["packages"]["foo@1.0"]
        self.assertTrue(locked["uninstallable"])
        self.assertEqual(list(locked["systems"]), ["aarch64-darwin"])
        self.assertEqual(self.nix.built, [])

    def test_escaping_plugin_file_fails_the_add(self) -> None:
        plugins = PluginManager(
            project_dir=self.root,
            plugins={"foo": Plugin(name="foo", create_files={"../../outside.txt": "x"})},
        )
        with self.assertRaises(InstallationError) as ctx:
            self.project(plugins=plugins).add(["foo@1.0"])

        self.assertIsInstance(ctx.exception.__cause__, ValidationError)
        self.assertFalse((self.root / "pkgbox.json").exists())

    def test_allow_insecure_is_recorded(self) -> None:
        stderr = io.StringIO()
        self.project(stderr=stderr).add(["foo@1.0"], AddOpts(allow_insecure=True))

        self.assertTrue(self.lock_json()["packages"]["foo@1.0"]["allow_insecure"])
        self.assertTrue(self.nix.allow_insecure)
        self.assertIn("Allowing insecure for foo@1.0", stderr.getvalue())
        self.assertNotIn("was not modified", stderr.getvalue())

    def test_runx_packages_are_installed_with_runx(self) -> None:
        project = self.project()
        project.add(["runx:cli/cli"])

        self.assertEqual(project.runx.installed, ["runx:cli/cli@latest"])  # type: ignore[attr-defined]
        self.assertEqual(self.manifest_json()["packages"], ["runx:cli/cli"])
        self.assertEqual(self.lock_json()["packages"]["runx:cli/cli"], {"resolved": "runx:cli/cli@latest"})
        self.assertEqual(self.nix.built, [])

    def test_plugin_files_and_readme(self) -> None:
        stderr = io.StringIO()
        plugins = PluginManager(
            project_dir=self.root,
            plugins={"foo": Plugin(name="foo", readme="Run foo-init once.", create_files={"foo.conf": "x=1\n"})},
        )
        self.project(stderr=stderr, plugins=plugins).add(["foo@1.0"])

        self.assertIn("foo NOTES:\nRun foo-init once.", stderr.getvalue())
        self.assertTrue((self.root / VIRTENV_PATH / "foo" / "foo.conf").exists())

        self.project(plugins=plugins).remove("foo")
        self.assertFalse((self.root / VIRTENV_PATH / "foo").exists())

    def test_package_already_in_profile_is_not_rebuilt(self) -> None:
        self.nix.elements = {
            "foo": {
                "active": True,
                "attrPath": f"legacyPackages.{SYSTEM}.foo",
                "originalUrl": f"github:NixOS/nixpkgs/{commit_for('foo', '1.0')}",
                "storePaths": ["/nix/store/zzz-foo-built-elsewhere"],
            }
        }
        self.project().add(["foo@1.0"])
        self.assertEqual(self.nix.built, [])


class TestPlatformValidation(_ProjectTestCase):
    def test_incompatible_package_leaves_files_byte_identical(self) -> None:
        self.project().add(["foo@1.0"])
        manifest_before = (self.root / "pkgbox.json").read_bytes()
        lock_before = (self.root / "pkgbox.lock").read_bytes()

        self.nix.broken_attrs.add("bar")
        with self.assertRaises(PlatformIncompatibleError) as ctx:
            self.project(cache_hit=False).add(["bar@3.1"])

        message = str(ctx.exception)
        self.assertIn(f"pkgbox add bar@3.1 --exclude-platform {SYSTEM}", message)
        self.assertIn("try `pkgbox add` with a different version", message)
        self.assertEqual((self.root / "pkgbox.json").read_bytes(), manifest_before)
        self.assertEqual((self.root / "pkgbox.lock").read_bytes(), lock_before)

    def test_excluded_platform_is_marked_once_and_not_revalidated(self) -> None:
        self.nix.broken_attrs.add("foo")
        self.project(cache_hit=False).add(["foo@1.0"], AddOpts(exclude_platforms=(SYSTEM,)))

        self.assertEqual(
            self.manifest_json()["packages"],
            [{"name": "foo@1.0", "excluded_platforms": [SYSTEM]}],
        )
        lock = self.lock_json()["packages"]
        self.assertEqual(list(lock), ["foo@1.0"])
        self.assertTrue(lock["foo@1.0"]["uninstallable"])
        resolve_calls = len(self.search.resolve_calls)

        self.project(cache_hit=False).ensure()

        self.assertEqual(self.nix.eval_calls, [])
        self.assertEqual(self.nix.built, [])
        self.assertEqual(len(self.search.resolve_calls), resolve_calls)
        self.assertEqual(list(self.lock_json()["packages"]), ["foo@1.0"])

    def test_internal_failures_carry_a_summary(self) -> None:
        class FailingBuild(FakeNix):
            def build(self, installables, *, flags, token):
                raise DownstreamToolError(("nix", "build"), 1, "error: builder failed\n")

        with self.assertRaises(InstallationError) as ctx:
            make_project(self.root, search=self.search, nix=FailingBuild()).add(["foo@1.0"])

        self.assertEqual(
            str(ctx.exception),
            "There was an error installing packages: `nix build` exited with code 1: error: builder failed",
        )
        self.assertIsInstance(ctx.exception.__cause__, DownstreamToolError)
        self.assertFalse((self.root / "pkgbox.json").exists())

    def test_search_failure_during_validation_carries_a_summary(self) -> None:
        class FailingSearch(FakeSearch):
            def resolve(self, name, version, *, token):
                raise SearchHTTPError(500, "boom")

        with self.assertRaises(InstallationError) as ctx:
            make_project(self.root, search=FailingSearch({}), nix=self.nix).add(["foo@1.0"])

        self.assertEqual(str(ctx.exception), "There was an error installing packages: Search service HTTP 500: boom")
        self.assertIsInstance(ctx.exception.__cause__, SearchHTTPError)
        self.assertFalse((self.root / "pkgbox.json").exists())


class TestEnsure(_ProjectTestCase):
    def test_ensure_is_idempotent(self) -> None:
        self.project().add(["foo@1.0", "bar"])
        stderr = io.StringIO()
        self.project(stderr=stderr).ensure()

        self.assertIn("Ensuring packages are installed.", stderr.getvalue())
        self.assertEqual(self.profile_paths(), {_out("foo", "1.0"), _out("bar", "3.1")})
        mutations = self.nix.profile_mutations
        lock_before = (self.root / "pkgbox.lock").read_bytes()

        stderr = io.StringIO()
        self.project(stderr=stderr).ensure()

        self.assertEqual(self.nix.profile_mutations, mutations)
        self.assertEqual(stderr.getvalue(), "")
        self.assertEqual((self.root / "pkgbox.lock").read_bytes(), lock_before)

    def test_remove_then_ensure_drops_profile_item(self) -> None:
        self.project().add(["foo@1.0", "bar"])
        self.project().ensure()

        removed = self.project().remove("foo")

        self.assertEqual(removed, ("foo@1.0",))
        self.assertEqual(self.manifest_json()["packages"], ["bar@latest"])
        self.assertEqual(list(self.lock_json()["packages"]), ["bar@latest"])

        self.project().ensure()
        self.assertEqual(self.profile_paths(), {_out("bar", "3.1")})

    def test_remove_unknown_package_warns(self) -> None:
        self.project().add(["foo@1.0"])
        stderr = io.StringIO()
        removed = self.project(stderr=stderr).remove("nope")

        self.assertEqual(removed, ())
        self.assertIn(
            "Warning: the following packages were not found in your pkgbox.json: nope",
            stderr.getvalue(),
        )
        self.assertEqual(self.manifest_json()["packages"], ["foo@1.0"])

    def test_ensure_failures_carry_a_summary(self) -> None:
        class FailingDevEnv(FakeNix):
            def print_dev_env(self, flake_dir, *, token):
                raise DownstreamToolError(("nix", "print-dev-env"), 1, "error: flake broken\n")

        self.project().add(["foo@1.0"])
        nix = FailingDevEnv()

        with self.assertRaises(InstallationError) as ctx:
            make_project(self.root, search=self.search, nix=nix).ensure()

        self.assertTrue(str(ctx.exception).startswith("There was an error installing packages: "))
        self.assertIsInstance(ctx.exception.__cause__, DownstreamToolError)
        self.assertEqual(nix.profile_mutations, 0)
        self.assertFalse((self.root / LOCAL_LOCK_PATH).exists())

    def test_install_reports_completion(self) -> None:
        self.project().add(["foo@1.0"])
        stderr = io.StringIO()
        self.project(stderr=stderr).install()
        self.assertIn("Info: Finished installing packages.", stderr.getvalue())
        self.assertTrue((self.root / LOCAL_LOCK_PATH).exists())


class TestSession(_ProjectTestCase):
    def test_add_in_session_syncs_profile_and_warns(self) -> None:
        environ = {SESSION_ENV: str(self.root)}
        stderr = io.StringIO()
        self.project(environ=environ, stderr=stderr).add(["foo@1.0"])

        self.assertEqual(self.profile_paths(), {_out("foo", "1.0")})
        self.assertEqual(self.nix.built, [])
        self.assertTrue((self.root / LOCAL_LOCK_PATH).exists())
        self.assertIn("Your shell environment may be out of date", stderr.getvalue())

        mutations = self.nix.profile_mutations
        self.project(environ=environ).ensure()
        self.assertEqual(self.nix.profile_mutations, mutations)

    def test_no_stale_shell_warning_under_direnv(self) -> None:
        environ = {SESSION_ENV: str(self.root), "DIRENV_DIR": "-" + str(self.root)}
        stderr = io.StringIO()
        project = self.project(environ=environ, stderr=stderr)
        project.add(["foo@1.0"])
        self.assertTrue(project.is_direnv_active())
        self.assertNotIn("out of date", stderr.getvalue())

    def test_session_for_other_project_is_ignored(self) -> None:
        project = self.project(environ={SESSION_ENV: "/somewhere/else"})
        self.assertFalse(project.is_env_enabled())
        project.add(["foo@1.0"])
        self.assertEqual(self.nix.elements, {})


class TestUpdate(_ProjectTestCase):
    def test_update_moves_to_newest_match(self) -> None:
        self.search.packages["foo"] = [make_version("foo", "1.0")]
        self.project().add(["foo"], AddOpts(allow_insecure=True))
        self.assertEqual(self.lock_json()["packages"]["foo@latest"]["version"], "1.0")

        self.search.packages["foo"].insert(0, make_version("foo", "2.0"))
        result = self.project().update()

        self.assertEqual(result.updated, ("foo@latest",))
        locked = self.lock_json()["packages"]["foo@latest"]
        self.assertEqual(locked["version"], "2.0")
        self.assertTrue(locked["allow_insecure"])

        again = self.project().update(["foo"])
        self.assertEqual(again.updated, ())
        self.assertEqual(again.unchanged, ("foo@latest",))

    def test_search_failure_during_update_carries_a_summary(self) -> None:
        class FailingSearch(FakeSearch):
            def resolve(self, name, version, *, token):
                raise SearchHTTPError(503, "unavailable")

        self.project().add(["foo@1.0"])
        lock_before = (self.root / "pkgbox.lock").read_bytes()

        with self.assertRaises(InstallationError) as ctx:
            make_project(self.root, search=FailingSearch({}), nix=self.nix).update()

        self.assertEqual(ctx.exception.summary, "There was an error updating packages")
        self.assertIsInstance(ctx.exception.__cause__, SearchHTTPError)
        self.assertEqual((self.root / "pkgbox.lock").read_bytes(), lock_before)

    def test_update_unknown_name(self) -> None:
        with self.assertRaises(NotFoundError):
            self.project().update(["nope"])


class TestCancellation(_ProjectTestCase):
    def test_cancel_during_build_commits_nothing(self) -> None:
        token = CancelToken()
        self.nix.on_build = token.cancel

        with self.assertRaises(CancelledError):
            self.project().add(["foo@1.0"], token=token)

        self.assertEqual(len(self.nix.built), 1)
        self.assertFalse((self.root / "pkgbox.json").exists())
        self.assertFalse((self.root / "pkgbox.lock").exists())

    def test_cancelled_update_leaves_lockfile_untouched(self) -> None:
        self.project().add(["foo@1.0"])
        lock_before = (self.root / "pkgbox.lock").read_bytes()
        token = CancelToken()
        token.cancel()

        with self.assertRaises(CancelledError):
            self.project().update(token=token)

        self.assertEqual((self.root / "pkgbox.lock").read_bytes(), lock_before)

    def test_cancelled_ensure_does_not_touch_profile(self) -> None:
        self.project().add(["foo@1.0"])
        token = CancelToken()
        token.cancel()
        with self.assertRaises(CancelledError):
            self.project().ensure(token=token)
        self.assertEqual(self.nix.profile_mutations, 0)
        self.assertFalse((self.root / LOCAL_LOCK_PATH).exists())
