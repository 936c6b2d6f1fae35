from __future__ import annotations

import pytest

from ledgerauthz.infra import migrate


def test_upgrade_targets_head(monkeypatch: pytest.MonkeyPatch) -> None:
    calls: list[tuple[str | None, str]] = []

    def _fake_upgrade(config: object, revision: str) -> None:
        calls.append((getattr(config, "config_file_name", None), revision))

    monkeypatch.setattr(migrate.command, "upgrade", _fake_upgrade)
    migrate.run_upgrade_head("alembic.ini")

    assert calls == [("alembic.ini", "head")]
