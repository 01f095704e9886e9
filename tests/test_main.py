from __future__ import annotations

import asyncio
import os

import pytest

from tracker.db import make_engine
from tracker.errors import StoreError
from tracker.main import _periodic


class _Stop(BaseException):
    pass


def test_periodic_sweep_survives_failures():
    calls = []

    def sweep():
        calls.append(len(calls))
        if len(calls) == 1:
            raise RuntimeError("unexpected")
        if len(calls) == 2:
            raise StoreError("db down")
        raise _Stop()

    with pytest.raises(_Stop):
        asyncio.run(_periodic("test", 0, sweep))

    assert len(calls) == 3


@pytest.mark.skipif("DATABASE_URL" in os.environ, reason="DATABASE_URL overrides the default")
def test_default_database_url_uses_declared_driver():
    from tracker.settings import Settings

    assert make_engine(Settings().database_url).dialect.driver == "psycopg2"
