"""Tests for the master service entry point."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from apps.panopticon_master import main as master


def test_build_parser_defaults() -> None:
    args = master.build_parser().parse_args([])
    assert args.config_root == "."
    assert args.workers == 0
    assert args.grace_period_ms is None


def test_build_parser_custom_values() -> None:
    args = master.build_parser().parse_args(
        ["--config-root", "/tmp/x", "--workers", "3", "--grace-period-ms", "250"]
    )
    assert args.config_root == "/tmp/x"
    assert args.workers == 3
    assert args.grace_period_ms == 250.0


@pytest.mark.asyncio
async def test_run_master_spawns_publishing_workers(tmp_path: Path) -> None:
    config_dir = tmp_path / "config"
    config_dir.mkdir()
    repo_config = Path(__file__).resolve().parents[1] / "config" / "base.yaml"
    (config_dir / "base.yaml").write_text(repo_config.read_text(encoding="utf-8"), encoding="utf-8")
    (config_dir / "local.yaml").write_text(
        f"logging: {{log_dir: {tmp_path / 'logs'}}}\npaths: {{journal_dir: {tmp_path / 'journal'}}}\n",
        encoding="utf-8",
    )

    bus = MagicMock()
    bus.close = AsyncMock()
    collector = MagicMock()
    collector.run = AsyncMock()
    collector.flush = AsyncMock(return_value=[])
    completed = MagicMock(returncode=0)

    with (
        patch.object(master, "Bus", return_value=bus),
        patch.object(master, "DeliveryCollector", return_value=collector) as collector_cls,
        patch.object(master, "spawn_workers", return_value=[completed, completed]) as spawn,
    ):
        await master.run_master(str(tmp_path), workers=2, grace_period_ms=0)

    spawn.assert_called_once()
    count, start_time_ms, extra_args = spawn.call_args.args
    assert count == 2
    assert start_time_ms > 0
    assert extra_args == ["--config-root", str(tmp_path), "--publish"]
    assert collector_cls.call_args.kwargs["topic"] == "panopticon.snapshots"
    assert collector_cls.call_args.kwargs["grace_period_ms"] == 0
    collector.flush.assert_awaited_once_with(force=True)
    bus.close.assert_awaited_once()
