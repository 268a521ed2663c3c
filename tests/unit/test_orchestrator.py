"""Tests for the deployment orchestrator."""

from __future__ import annotations

import asyncio
import shutil
from unittest.mock import AsyncMock

import pytest

from github_deployer.deploy import Deployer, remediation_message
from github_deployer.errors import ErrorKind, IncompatibleArchiveError, NotFoundError, TransportError
from github_deployer.models import DeployKind, DeployState, TrackedRepository

PLUGIN_V1 = "<?php\n/**\n * Plugin Name: Widget\n * Version: 1.0.0\n */"
PLUGIN_V2 = "<?php\n/**\n * Plugin Name: Widget\n * Version: 2.0.0\n */"


@pytest.fixture
def deployer(context):
    return Deployer(context)


@pytest.fixture
def plugins(settings):
    return settings.plugins_dir


def _listing(root):
    return sorted(p.name for p in root.iterdir()) if root.exists() else []


class TestDeploy:
    """Tests for Deployer.deploy()."""

    @pytest.mark.asyncio
    async def test_first_deploy(self, deployer, remote, store, sink, plugins):
        remote.add_archive(
            "acme", "widget", "v2.0.0", {"widget-v2.0.0/widget.php": PLUGIN_V2}, sha="abc123"
        )

        result = await deployer.deploy("acme", "widget", "v2.0.0", DeployKind.PLUGIN)

        assert result.success is True
        assert result.state == DeployState.DONE
        assert result.commit_sha == "abc123"
        assert result.backup_id is None
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V2
        assert _listing(plugins) == ["widget"]

        tracked = await store.get_by_name("acme", "widget")
        assert tracked.ref == "v2.0.0"
        assert tracked.last_deployed_commit_sha == "abc123"
        assert tracked.last_deployed_at is not None
        assert sink.events == ["after_deploy"]

    @pytest.mark.asyncio
    async def test_existing_target_without_update(self, deployer, remote, sink, plugins):
        (plugins / "widget").mkdir(parents=True)
        (plugins / "widget" / "widget.php").write_text(PLUGIN_V1)
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V2})

        result = await deployer.deploy("acme", "widget")

        assert result.success is False
        assert result.error_kind == ErrorKind.ALREADY_EXISTS
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V1
        assert remote.downloads == []
        assert sink.events == ["deploy_failed"]

    @pytest.mark.asyncio
    async def test_update_existing_takes_backup(self, deployer, context, remote, store, sink, plugins):
        await store.add(TrackedRepository(owner="acme", name="widget", ref="v1.0.0"))
        (plugins / "widget").mkdir(parents=True)
        (plugins / "widget" / "widget.php").write_text(PLUGIN_V1)
        remote.add_archive("acme", "widget", "v2.0.0", {"widget-v2.0.0/widget.php": PLUGIN_V2})

        result = await deployer.deploy(
            "acme", "widget", "v2.0.0", DeployKind.PLUGIN, update_existing=True
        )

        assert result.success is True
        assert result.backup_id is not None
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V2
        backups = await context.backups.list_backups("acme", "widget")
        assert [b.source_ref for b in backups] == ["v1.0.0"]
        assert sink.events == ["after_update"]
        assert (await store.get_by_name("acme", "widget")).ref == "v2.0.0"

    @pytest.mark.asyncio
    async def test_custom_target_dir_and_auto_update(self, deployer, remote, store, plugins):
        remote.add_archive("acme", "widget", "main", {"acme-widget-abc/widget.php": PLUGIN_V1})

        result = await deployer.deploy(
            "acme", "widget", target_dir="widget-pro", auto_update=True
        )

        assert result.success is True
        assert (plugins / "widget-pro" / "widget.php").is_file()
        tracked = await store.get_by_name("acme", "widget")
        assert tracked.target_dir == "widget-pro"
        assert tracked.auto_update is True

    @pytest.mark.asyncio
    async def test_theme_goes_to_theme_root(self, deployer, remote, settings):
        remote.add_archive("acme", "skin", "main", {"skin-main/style.css": "/* Theme Name: Skin */"})

        result = await deployer.deploy("acme", "skin", "main", DeployKind.THEME)

        assert result.success is True
        assert (settings.themes_dir / "skin" / "style.css").is_file()
        assert not (settings.plugins_dir / "skin").exists()

    @pytest.mark.asyncio
    async def test_incompatible_archive(self, deployer, remote, sink, plugins):
        remote.add_archive("acme", "widget", "main", {"widget-main/src/widget.php": PLUGIN_V1})

        result = await deployer.deploy("acme", "widget")

        assert result.success is False
        assert result.error_kind == ErrorKind.INCOMPATIBLE_ARCHIVE
        assert result.state == DeployState.VALIDATING
        assert "top level" in result.message
        assert _listing(plugins) == []
        assert sink.notifications[0].detail == result.message

    @pytest.mark.asyncio
    async def test_unknown_repository(self, deployer, context, sink):
        context.github.get_repository.side_effect = NotFoundError("GitHub API error (404)")

        result = await deployer.deploy("acme", "ghost")

        assert result.error_kind == ErrorKind.NOT_FOUND
        assert result.state == DeployState.RESOLVING
        assert result.cause.context["owner"] == "acme"
        assert sink.events == ["deploy_failed"]

    @pytest.mark.asyncio
    async def test_download_failure_state(self, deployer, plugins):
        result = await deployer.deploy("acme", "widget", "missing-ref")

        assert result.error_kind == ErrorKind.DOWNLOAD_FAILED
        assert result.state == DeployState.DOWNLOADING
        assert _listing(plugins) == []

    @pytest.mark.asyncio
    async def test_commit_lookup_failure_is_not_fatal(self, deployer, context, remote, store):
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V1})
        context.github.get_latest_commit.side_effect = TransportError("timeout")

        result = await deployer.deploy("acme", "widget")

        assert result.success is True
        assert result.commit_sha is None
        assert (await store.get_by_name("acme", "widget")).last_deployed_commit_sha is None

    @pytest.mark.asyncio
    async def test_store_failure_is_not_fatal(self, deployer, context, remote):
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V1})
        context.store.add = AsyncMock(side_effect=RuntimeError("db down"))

        result = await deployer.deploy("acme", "widget")

        assert result.success is True

    @pytest.mark.asyncio
    async def test_concurrent_deploys_same_target(self, deployer, context, remote, plugins):
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V1})
        entered = asyncio.Event()
        release = asyncio.Event()
        real_download = context.installer._download

        async def gated_download(url, path):
            entered.set()
            await release.wait()
            await real_download(url, path)

        context.installer._download = gated_download

        first = asyncio.create_task(deployer.deploy("acme", "widget"))
        await entered.wait()
        second = await deployer.deploy("acme", "widget")
        release.set()
        first_result = await first

        assert second.success is False
        assert second.error_kind == ErrorKind.BUSY
        assert first_result.success is True
        assert context.locks.acquisitions == 1
        assert _listing(plugins) == ["widget"]

    @pytest.mark.asyncio
    @pytest.mark.parametrize("target_dir", ["../../escaped", "..", ".", "nested/widget", "/tmp/abs"])
    async def test_target_dir_outside_root_rejected(
        self, deployer, context, remote, sink, settings, target_dir
    ):
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V1})

        result = await deployer.deploy("acme", "widget", target_dir=target_dir)

        assert result.success is False
        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert result.state == DeployState.RESOLVING
        context.github.get_repository.assert_not_awaited()
        assert remote.downloads == []
        assert not (settings.plugins_dir.parent.parent / "escaped").exists()
        assert not settings.plugins_dir.exists()
        assert not settings.lock_dir.exists()
        assert sink.events == ["deploy_failed"]

    @pytest.mark.asyncio
    async def test_dot_dot_repository_name_rejected(self, deployer, remote, settings):
        result = await deployer.deploy("acme", "..")

        assert result.error_kind == ErrorKind.INVALID_REQUEST
        assert remote.downloads == []
        assert not settings.plugins_dir.exists()

    @pytest.mark.asyncio
    async def test_unusable_lock_dir_fails_deploy(self, deployer, remote, sink, settings, plugins):
        settings.lock_dir.parent.mkdir(parents=True, exist_ok=True)
        settings.lock_dir.write_text("not a directory")
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN_V1})

        result = await deployer.deploy("acme", "widget")

        assert result.success is False
        assert result.error_kind == ErrorKind.LOCK_FAILED
        assert result.cause.context["owner"] == "acme"
        assert remote.downloads == []
        assert _listing(plugins) == []
        assert sink.events == ["deploy_failed"]


class TestDeployRepository:
    """Tests for Deployer.deploy_repository()."""

    @pytest.mark.asyncio
    async def test_uses_stored_settings(self, deployer, remote, store, settings, sink):
        repo = await store.add(
            TrackedRepository(
                owner="acme", name="skin", ref="stable", kind=DeployKind.THEME, target_dir="skin-x"
            )
        )
        remote.add_archive("acme", "skin", "stable", {"skin-stable/style.css": "/* Theme Name: S */"})

        result = await deployer.deploy_repository(repo.id)

        assert result.success is True
        assert result.ref == "stable"
        assert (settings.themes_dir / "skin-x" / "style.css").is_file()
        assert sink.events == ["after_update"]

    @pytest.mark.asyncio
    async def test_unknown_id(self, deployer):
        result = await deployer.deploy_repository(42)
        assert result.success is False
        assert result.error_kind == ErrorKind.NOT_FOUND


class TestRollback:
    """Tests for Deployer.rollback()."""

    @pytest.mark.asyncio
    async def test_rollback_restores_previous_tree(self, deployer, context, remote, store, sink, plugins):
        remote.add_archive("acme", "widget", "v1.0.0", {"widget-v1.0.0/widget.php": PLUGIN_V1})
        remote.add_archive("acme", "widget", "v2.0.0", {"widget-v2.0.0/widget.php": PLUGIN_V2})
        await deployer.deploy("acme", "widget", "v1.0.0")
        updated = await deployer.deploy("acme", "widget", "v2.0.0", update_existing=True)

        result = await deployer.rollback("acme", "widget", updated.backup_id)

        assert result.success is True
        assert result.ref == "v1.0.0"
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V1
        assert (await store.get_by_name("acme", "widget")).ref == "v1.0.0"
        assert sink.events == ["after_deploy", "after_update", "after_rollback"]

        undo = await deployer.rollback("acme", "widget", result.backup_id)
        assert undo.success is True
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V2
        assert (await store.get_by_name("acme", "widget")).ref == "v1.0.0"

    @pytest.mark.asyncio
    async def test_rollback_unknown_backup(self, deployer, sink):
        result = await deployer.rollback("acme", "widget", "backup-20260101T000000000000Z.zip")

        assert result.success is False
        assert result.error_kind == ErrorKind.BACKUP_NOT_FOUND
        assert sink.events == ["rollback_failed"]

    @pytest.mark.asyncio
    async def test_rollback_unusable_lock_dir(self, deployer, remote, sink, settings, plugins):
        remote.add_archive("acme", "widget", "v1.0.0", {"widget-v1.0.0/widget.php": PLUGIN_V1})
        remote.add_archive("acme", "widget", "v2.0.0", {"widget-v2.0.0/widget.php": PLUGIN_V2})
        await deployer.deploy("acme", "widget", "v1.0.0")
        updated = await deployer.deploy("acme", "widget", "v2.0.0", update_existing=True)
        shutil.rmtree(settings.lock_dir)
        settings.lock_dir.write_text("not a directory")

        result = await deployer.rollback("acme", "widget", updated.backup_id)

        assert result.success is False
        assert result.error_kind == ErrorKind.LOCK_FAILED
        assert (plugins / "widget" / "widget.php").read_text() == PLUGIN_V2
        assert sink.events[-1] == "rollback_failed"


class TestRemediationMessage:
    """Tests for remediation_message()."""

    def test_lists_expected_layouts(self):
        error = IncompatibleArchiveError("no", checked=["a plugin header", "a theme stylesheet"])
        message = remediation_message("acme", "widget", "main", DeployKind.THEME, error)
        assert message.startswith("acme/widget@main does not look like a theme.")
        assert "a plugin header; or a theme stylesheet" in message
