"""Tests for the ``python -m mileage_guard`` entry point."""

from __future__ import annotations

import pytest

from mileage_guard.__main__ import _build_parser, _simulate, _sweep
from mileage_guard.tests.factories import make_settings


def test_parser_defaults() -> None:
    args = _build_parser().parse_args(["simulate"])
    assert args.command == "simulate"
    assert args.scenario == "normal_trip"
    assert args.url is None
    assert args.dry_run is None


def test_parser_serve_flags() -> None:
    args = _build_parser().parse_args(["serve", "--port", "9000", "--dry-run"])
    assert args.port == 9000
    assert args.dry_run is True


def test_command_required() -> None:
    with pytest.raises(SystemExit):
        _build_parser().parse_args([])


@pytest.mark.asyncio
async def test_simulate_runs_in_process() -> None:
    args = _build_parser().parse_args(["simulate", "--scenario", "rollback", "--seed", "1"])
    settings = make_settings(ledger_dry_run=False)
    results = await _simulate(settings, args)
    assert len(results) == 8
    assert results[-1]["batchStatus"] == "rejected"
    assert settings.ledger_dry_run is True


@pytest.mark.asyncio
async def test_single_sweep_on_empty_store() -> None:
    await _sweep(make_settings(), loop=False)
