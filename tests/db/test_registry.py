"""Tests for the driver registry."""

from __future__ import annotations

from typing import Any

import pytest

from xsql.db import registry


def test_builtin_drivers_are_registered() -> None:
    names = registry.registered_names()

    assert "mysql" in names and "pg" in names
    assert list(names) == sorted(names)


def test_register_rejects_bad_input(monkeypatch: pytest.MonkeyPatch, fakes: Any) -> None:
    monkeypatch.setattr(registry, "_DRIVERS", {})

    with pytest.raises(ValueError):
        registry.register("", fakes.Driver())
    with pytest.raises(ValueError):
        registry.register("x", None)

    registry.register("x", fakes.Driver())
    with pytest.raises(ValueError, match="already registered"):
        registry.register("x", fakes.Driver())


def test_get_unknown_returns_none() -> None:
    assert registry.get("oracle") is None


def test_schema_capability_is_optional(fakes: Any) -> None:
    from xsql.db.schema import SchemaInfo

    assert not isinstance(fakes.Driver(), registry.SchemaDriver)
    assert isinstance(fakes.SchemaDriver(SchemaInfo(database="d")), registry.SchemaDriver)
