"""Tests for lazy_publish.pipeline."""

from __future__ import annotations

import asyncio
import json
import subprocess
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, patch

import pytest

from conftest import FakeBuilder, FakeRegistry, FakeScm, StaticDetector
from lazy_publish.config import ReleaseConfig
from lazy_publish.errors import (
    BuildError,
    CircularDependencyError,
    ManifestError,
    PublishError,
    UnresolvedDependencyError,
)
from lazy_publish.models import Dependency, DependencyKind, Package, Route
from lazy_publish.pipeline import (
    ShellBuilder,
    plan_workspace,
    prefetch_versions,
    publish_batches,
    resolve_internal_versions,
    run_release,
)


def pkg_manifest(name: str, *deps: str, npm: bool = True) -> dict[str, Any]:
    manifest: dict[str, Any] = {"name": name, "version": "0.0.0", "npm": npm}
    if deps:
        manifest["dependencies"] = {d: "workspace:*" for d in deps}
    return manifest


def workspace_config(root: Path, **overrides: Any) -> ReleaseConfig:
    return ReleaseConfig(root=str(root), route=Route.MONOREPO_WORKSPACE, **overrides)


def release(
    config: ReleaseConfig,
    registry: FakeRegistry,
    scm: FakeScm,
    builder: FakeBuilder,
    changed: set[str],
):
    return asyncio.run(
        run_release(
            config,
            registry=registry,
            scm=scm,
            builder=builder,
            detector=StaticDetector(changed),
        )
    )


def make_package(name: str, *deps: str) -> Package:
    return Package(
        name=name,
        path=name,
        dependencies=[
            Dependency(name=d, kind=DependencyKind.INTERNAL, specifier="workspace:*")
            for d in deps
        ],
    )


@pytest.fixture
def chain_workspace(write_workspace: Any, registry: FakeRegistry) -> Path:
    """a → b → c, all published at 1.0.0."""
    root = write_workspace(
        {
            "a": pkg_manifest("a", "b"),
            "b": pkg_manifest("b", "c"),
            "c": pkg_manifest("c"),
        }
    )
    for name in ("a", "b", "c"):
        registry.add(name, "1.0.0")
    return root


@pytest.fixture
def app_workspace(write_workspace: Any, registry: FakeRegistry) -> Path:
    """core ← utils ← app, plus an unrelated docs package."""
    root = write_workspace(
        {
            "core": pkg_manifest("core"),
            "utils": pkg_manifest("utils", "core"),
            "app": pkg_manifest("app", "utils"),
            "docs": pkg_manifest("docs"),
        }
    )
    registry.add("core", "2.3.0")
    registry.add("utils", "1.4.2")
    registry.add("app", "0.9.0")
    registry.add("docs", "1.0.0")
    return root


class TestWorkspaceRelease:
    def test_publishes_changed_and_dependents_in_order(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        result = release(
            workspace_config(app_workspace), registry, scm, builder, {"utils"}
        )

        assert [(r.name, r.version) for r in result.published] == [
            ("utils", "1.4.3"),
            ("app", "0.9.1"),
        ]
        assert registry.published_names == ["utils", "app"]
        by_name = {p["name"]: p for p in registry.published}
        # app picks up the version of utils published in this run
        assert by_name["app"]["manifest"]["dependencies"]["utils"] == "1.4.3"
        # core wasn't published, so utils pins its registry version
        assert by_name["utils"]["manifest"]["dependencies"]["core"] == "2.3.0"
        assert all(p["tag"] == "latest" for p in registry.published)

    def test_rewritten_manifest_on_disk(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        release(workspace_config(app_workspace), registry, scm, builder, {"utils"})
        doc = json.loads((app_workspace / "packages/app/package.json").read_text())
        assert doc["version"] == "0.9.1"
        assert doc["dependencies"] == {"utils": "1.4.3"}

    def test_chain_uses_versions_from_this_run(
        self,
        chain_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        release(
            workspace_config(chain_workspace, bump="minor"),
            registry,
            scm,
            builder,
            {"c"},
        )
        assert registry.published_names == ["c", "b", "a"]
        by_name = {p["name"]: p["manifest"] for p in registry.published}
        assert by_name["b"]["dependencies"]["c"] == "1.1.0"
        assert by_name["a"]["dependencies"]["b"] == "1.1.0"

    def test_builds_publishable_packages(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        release(workspace_config(app_workspace), registry, scm, builder, {"utils"})
        assert builder.built == [["app", "core", "docs", "utils"]]

    def test_dev_branch_publishes_prereleases(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        builder: FakeBuilder,
    ) -> None:
        registry.add("core", "2.4.0-dev.3")
        result = release(
            workspace_config(app_workspace),
            registry,
            FakeScm(branch="dev"),
            builder,
            {"core"},
        )
        versions = {r.name: r.version for r in result.published}
        assert versions["core"] == "2.4.0-dev.4"
        assert versions["utils"] == "1.4.3-dev.0"
        assert all(p["tag"] == "dev" for p in registry.published)

    def test_nothing_changed(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        result = release(workspace_config(app_workspace), registry, scm, builder, set())
        assert result.published == []
        assert result.skipped_reason == "No changed packages"
        assert registry.published == []

    def test_force_publishes_everything(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        result = release(
            workspace_config(app_workspace, force=True), registry, scm, builder, set()
        )
        assert sorted(r.name for r in result.published) == [
            "app",
            "core",
            "docs",
            "utils",
        ]

    def test_no_publishable_packages(
        self,
        write_workspace: Any,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        root = write_workspace({"a": pkg_manifest("a", npm=False)})
        result = release(workspace_config(root), registry, scm, builder, {"a"})
        assert result.skipped_reason == "No publishable packages"
        assert builder.built == []

    def test_dependent_not_opted_in_is_left_alone(
        self,
        write_workspace: Any,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        root = write_workspace(
            {
                "core": pkg_manifest("core"),
                "site": pkg_manifest("site", "core", npm=False),
            }
        )
        result = release(workspace_config(root), registry, scm, builder, {"core"})
        assert [r.name for r in result.published] == ["core"]

    def test_not_a_release_branch(
        self,
        app_workspace: Path,
        registry: FakeRegistry,
        builder: FakeBuilder,
    ) -> None:
        result = release(
            workspace_config(app_workspace),
            registry,
            FakeScm(branch="feature-x"),
            builder,
            {"core"},
        )
        assert result.published == []
        assert "feature-x" in (result.skipped_reason or "")
        assert builder.built == []
        assert registry.published == []

    def test_cycle_aborts_before_publishing(
        self,
        write_workspace: Any,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        root = write_workspace(
            {"a": pkg_manifest("a", "b"), "b": pkg_manifest("b", "a")}
        )
        with pytest.raises(CircularDependencyError):
            release(workspace_config(root), registry, scm, builder, {"a"})
        assert registry.published == []

    def test_self_dependency_aborts_before_publishing(
        self,
        write_workspace: Any,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        root = write_workspace(
            {"core": pkg_manifest("core"), "app": pkg_manifest("app", "core", "app")}
        )
        registry.add("core", "1.0.0")
        registry.add("app", "1.0.0")
        with pytest.raises(CircularDependencyError) as excinfo:
            release(workspace_config(root), registry, scm, builder, {"core"})
        assert excinfo.value.remaining == ["app"]
        assert registry.published == []

    def test_failure_stops_later_batches(
        self,
        chain_workspace: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        registry.fail_publish.add("b")
        with pytest.raises(PublishError) as excinfo:
            release(workspace_config(chain_workspace), registry, scm, builder, {"c"})

        assert excinfo.value.package == "b"
        assert excinfo.value.version == "1.0.1"
        assert [(r.name, r.version) for r in excinfo.value.published] == [
            ("c", "1.0.1")
        ]
        assert registry.published_names == ["c"]

    def test_unresolved_dependency(
        self,
        write_workspace: Any,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        root = write_workspace(
            {
                "core": pkg_manifest("core", npm=False),
                "app": pkg_manifest("app", "core"),
            }
        )
        with pytest.raises(PublishError) as excinfo:
            release(workspace_config(root), registry, scm, builder, {"app"})

        assert isinstance(excinfo.value.cause, UnresolvedDependencyError)
        assert excinfo.value.cause.dependency == "core"
        assert registry.published == []


class TestPlanWorkspace:
    def test_plan_without_builder(
        self, app_workspace: Path, registry: FakeRegistry, scm: FakeScm
    ) -> None:
        plan = asyncio.run(
            plan_workspace(
                workspace_config(app_workspace),
                registry,
                scm,
                StaticDetector({"core"}),
            )
        )
        assert plan.skipped_reason is None
        assert [[p.name for p in batch] for batch in plan.batches] == [
            ["core"],
            ["utils"],
            ["app"],
        ]
        assert registry.published == []

    def test_since_uses_git_history(
        self, app_workspace: Path, registry: FakeRegistry, scm: FakeScm
    ) -> None:
        scm.diffs["v1..HEAD"] = ["packages/docs/README.md"]
        detector = StaticDetector()
        plan = asyncio.run(
            plan_workspace(
                workspace_config(app_workspace, since="v1..HEAD"),
                registry,
                scm,
                detector,
            )
        )
        assert [[p.name for p in batch] for batch in plan.batches] == [["docs"]]
        assert detector.checked == []


class TestPublishBatches:
    def test_failed_sibling_does_not_stop_its_batch(
        self, registry: FakeRegistry, tmp_path: Path
    ) -> None:
        packages = {}
        for name in ("x", "y", "z"):
            (tmp_path / name).mkdir()
            packages[name] = Package(
                name=name,
                path=str(tmp_path / name),
                manifest={"name": name, "version": "0.0.0"},
            )
        packages["z"].dependencies = [
            Dependency(name="y", kind=DependencyKind.INTERNAL, specifier="workspace:*")
        ]
        registry.fail_publish.add("x")

        with pytest.raises(PublishError) as excinfo:
            asyncio.run(
                publish_batches(
                    [[packages["x"], packages["y"]], [packages["z"]]],
                    registry,
                    ReleaseConfig(),
                    "main",
                )
            )
        assert excinfo.value.package == "x"
        assert [r.name for r in excinfo.value.published] == ["y"]
        assert registry.published_names == ["y"]

    def test_first_publish_starts_at_0_0_1(
        self, registry: FakeRegistry, tmp_path: Path
    ) -> None:
        pkg = Package(
            name="fresh", path=str(tmp_path), manifest={"name": "fresh"}
        )
        records = asyncio.run(
            publish_batches([[pkg]], registry, ReleaseConfig(), "main")
        )
        assert records[0].version == "0.0.1"
        assert registry.published[0]["access"] == "public"


class TestPrefetchVersions:
    def test_fetches_each_outside_dependency_once(self, registry: FakeRegistry) -> None:
        registry.add("core", "2.0.0")
        batches = [
            [make_package("utils", "core")],
            [make_package("app", "core", "utils")],
        ]
        assert asyncio.run(prefetch_versions(batches, registry)) == {"core": "2.0.0"}
        assert registry.fetch_calls == ["core"]

    def test_nothing_to_fetch(self, registry: FakeRegistry) -> None:
        assert asyncio.run(prefetch_versions([[make_package("a")]], registry)) == {}
        assert registry.fetch_calls == []

    def test_failures_and_unpublished_left_out(
        self, registry: FakeRegistry, capsys: pytest.CaptureFixture[str]
    ) -> None:
        registry.fail_fetch.add("broken")
        batches = [[make_package("app", "broken", "missing")]]
        assert asyncio.run(prefetch_versions(batches, registry)) == {}
        assert "Failed to fetch version for broken" in capsys.readouterr().err


class TestResolveInternalVersions:
    def test_this_run_wins(self) -> None:
        pkg = make_package("app", "core")
        assert resolve_internal_versions(pkg, {"core": "2.0.0"}, {"core": "1.0.0"}) == {
            "core": "2.0.0"
        }

    def test_falls_back_to_registry(self) -> None:
        pkg = make_package("app", "core")
        assert resolve_internal_versions(pkg, {}, {"core": "1.0.0"}) == {
            "core": "1.0.0"
        }

    def test_unresolved(self) -> None:
        with pytest.raises(UnresolvedDependencyError, match="core"):
            resolve_internal_versions(make_package("app", "core"), {}, {})


class TestPackageRelease:
    @pytest.fixture
    def single_package(self, tmp_path: Path) -> Path:
        (tmp_path / "package.json").write_text(
            json.dumps({"name": "solo", "version": "0.0.0", "npm": True})
        )
        return tmp_path

    @pytest.mark.parametrize(
        "route", [Route.SINGLE_PACKAGE, Route.MONOREPO_SINGLE_PACKAGE]
    )
    def test_publishes_package(
        self,
        single_package: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
        route: Route,
    ) -> None:
        registry.add("solo", "3.2.1")
        config = ReleaseConfig(root=str(single_package), route=route, bump="major")
        result = release(config, registry, scm, builder, {"solo"})
        assert [(r.name, r.version) for r in result.published] == [("solo", "4.0.0")]
        assert builder.built == [["solo"]]

    def test_unchanged_package_skipped(
        self,
        single_package: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        registry.add("solo", "3.2.1")
        result = release(
            ReleaseConfig(root=str(single_package)), registry, scm, builder, set()
        )
        assert result.skipped_reason == "No changed packages"
        assert registry.published == []

    def test_workspace_dependencies_rejected(
        self,
        tmp_path: Path,
        registry: FakeRegistry,
        scm: FakeScm,
        builder: FakeBuilder,
    ) -> None:
        (tmp_path / "package.json").write_text(
            json.dumps(
                {"name": "solo", "dependencies": {"core": "workspace:*"}, "npm": True}
            )
        )
        with pytest.raises(ManifestError, match="workspace dependencies"):
            release(ReleaseConfig(root=str(tmp_path)), registry, scm, builder, {"solo"})
        assert builder.built == []


class TestShellBuilder:
    def test_single_package_builds_in_package_dir(self, tmp_path: Path) -> None:
        pkg = Package(name="solo", path=str(tmp_path))
        config = ReleaseConfig(root=str(tmp_path), build_command="compile")
        with patch("lazy_publish.pipeline.run_async", new=AsyncMock()) as mock_run:
            asyncio.run(ShellBuilder().build([pkg], config))
        assert [c.args for c in mock_run.await_args_list] == [
            ("bun", "install"),
            ("bun", "run", "compile"),
        ]
        assert mock_run.await_args_list[1].kwargs["cwd"] == tmp_path

    def test_workspace_builds_from_root(self, tmp_path: Path) -> None:
        packages = [Package(name="a", path="a"), Package(name="b", path="b")]
        config = workspace_config(tmp_path)
        with patch("lazy_publish.pipeline.run_async", new=AsyncMock()) as mock_run:
            asyncio.run(ShellBuilder().build(packages, config))
        install_call, build_call = mock_run.await_args_list
        assert install_call.args == ("bun", "install")
        assert install_call.kwargs["cwd"] == config.root_path
        assert build_call.kwargs["cwd"] == config.root_path

    def test_workspace_build_includes_internal_deps(self, tmp_path: Path) -> None:
        packages = [
            Package(name="app", path="app"),
            Package(name="@acme/ui", path="ui"),
        ]
        config = workspace_config(tmp_path, build_command="compile")
        with patch("lazy_publish.pipeline.run_async", new=AsyncMock()) as mock_run:
            asyncio.run(ShellBuilder().build(packages, config))
        assert mock_run.await_args_list[1].args == (
            "bunx",
            "turbo",
            "run",
            "compile",
            "--filter=app...",
            "--filter=@acme/ui...",
        )

    def test_failure_raises_build_error(self, tmp_path: Path) -> None:
        error = subprocess.CalledProcessError(2, ["bun", "install"])
        pkg = Package(name="solo", path=str(tmp_path))
        with patch(
            "lazy_publish.pipeline.run_async", new=AsyncMock(side_effect=error)
        ):
            with pytest.raises(BuildError, match="Build failed"):
                asyncio.run(ShellBuilder().build([pkg], ReleaseConfig()))
