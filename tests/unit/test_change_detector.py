"""Tests for the auto-update change detector."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest

from github_deployer.deploy import Deployer
from github_deployer.errors import ErrorKind, NotFoundError, RateLimitedError
from github_deployer.models import DeployKind, TrackedRepository
from github_deployer.updater import ChangeDetector

PLUGIN = "<?php /* Plugin Name: Widget */"


@pytest.fixture
def deployer(context):
    return Deployer(context)


@pytest.fixture
def detector(context, deployer):
    return ChangeDetector(context, deployer)


async def _track(store, name="widget", *, sha="old-sha", auto_update=True, ref="main"):
    return await store.add(
        TrackedRepository(
            owner="acme",
            name=name,
            ref=ref,
            kind=DeployKind.PLUGIN,
            auto_update=auto_update,
            last_deployed_commit_sha=sha,
        )
    )


class TestCheckForUpdates:
    """Tests for ChangeDetector.check_for_updates()."""

    @pytest.mark.asyncio
    async def test_changed_sha_triggers_one_deploy(self, detector, remote, store, settings, sink):
        repo = await _track(store)
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN}, sha="new-sha")

        results = await detector.check_for_updates()

        assert len(results) == 1
        check = results[0]
        assert check.update_available is True
        assert check.deployed is True
        assert check.latest_sha == "new-sha"
        assert len(remote.downloads) == 1
        assert (settings.plugins_dir / "widget" / "widget.php").is_file()
        assert (await store.get(repo.id)).last_deployed_commit_sha == "new-sha"
        assert sink.events == ["after_update"]
        assert detector.last_run_at is not None

    @pytest.mark.asyncio
    async def test_unchanged_sha_is_noop(self, detector, remote, store, sink):
        repo = await _track(store, sha="same-sha")
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN}, sha="same-sha")

        results = await detector.check_for_updates()

        assert results[0].update_available is False
        assert results[0].deployment is None
        assert remote.downloads == []
        assert sink.events == []
        assert (await store.get(repo.id)).last_checked_at is not None

    @pytest.mark.asyncio
    async def test_only_auto_update_repositories(self, detector, context, store):
        await _track(store, "manual", auto_update=False)

        assert await detector.check_for_updates() == []
        context.github.get_latest_commit.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, detector, context, remote, store):
        await _track(store, "broken")
        await _track(store, "widget")
        remote.add_archive("acme", "widget", "main", {"widget-main/widget.php": PLUGIN}, sha="new-sha")

        def repository(owner, name):
            if name == "broken":
                raise NotFoundError("GitHub API error (404)")
            return remote.repository(owner, name)

        context.github.get_repository.side_effect = repository

        results = await detector.check_for_updates()

        by_name = {r.repository.name: r for r in results}
        assert by_name["broken"].error_kind == ErrorKind.NOT_FOUND
        assert by_name["broken"].deployment is None
        assert by_name["widget"].deployed is True

    @pytest.mark.asyncio
    async def test_failed_deploy_keeps_old_sha(self, detector, remote, store):
        repo = await _track(store)
        remote.add_archive("acme", "widget", "main", {"widget-main/notes.txt": "x"}, sha="new-sha")

        check = (await detector.check_for_updates())[0]

        assert check.update_available is True
        assert check.deployed is False
        assert check.error_kind == ErrorKind.INCOMPATIBLE_ARCHIVE
        assert (await store.get(repo.id)).last_deployed_commit_sha == "old-sha"

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_isolated(self, detector, context, store):
        await _track(store)
        context.github.get_latest_commit.side_effect = RuntimeError("boom")

        check = (await detector.check_for_updates())[0]

        assert check.error == "boom"
        assert check.error_kind is None

    @pytest.mark.asyncio
    async def test_to_dict(self, detector, context, store):
        await _track(store)
        context.github.get_latest_commit.side_effect = RateLimitedError("slow down")

        data = (await detector.check_for_updates())[0].to_dict()

        assert data["repository"] == "acme/widget"
        assert data["previous_sha"] == "old-sha"
        assert data["error_kind"] == "rate_limited"
        assert data["deployed"] is False


class TestScheduling:
    """Tests for run_once() and run_forever()."""

    @pytest.mark.asyncio
    async def test_run_once_swallows_store_errors(self, detector, context):
        context.store.list_auto_update = AsyncMock(side_effect=RuntimeError("db down"))
        assert await detector.run_once() == []

    @pytest.mark.asyncio
    async def test_run_forever_until_cancelled(self, detector):
        detector.run_once = AsyncMock(return_value=[])
        task = asyncio.create_task(detector.run_forever(interval=0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert detector.run_once.await_count >= 2


class TestAutoUpdateToggles:
    """Tests for enable/disable auto-update."""

    @pytest.mark.asyncio
    async def test_enable_and_disable(self, detector, store):
        repo = await _track(store, auto_update=False)

        enabled = await detector.enable_auto_update(repo.id)
        assert enabled.auto_update is True
        disabled = await detector.disable_auto_update(repo.id)
        assert disabled.auto_update is False

    @pytest.mark.asyncio
    async def test_unknown_repository(self, detector):
        with pytest.raises(NotFoundError):
            await detector.enable_auto_update(404)
