import asyncio
from typing import Any, Dict, List

import pytest

from concepts import Requesting, Sessioning
from engine import Concept


class Probe(Concept):
    """Test concept: actions echo their input, queries serve canned rows."""

    def __init__(self, name: str = "Probe"):
        super().__init__(name)
        self.calls: List[tuple] = []
        self.rows: Dict[Any, List[Dict[str, Any]]] = {}
        self.lookups: List[Dict[str, Any]] = []

    def _answer(self, action: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append((action, fields))
        if fields.get("fail"):
            return {"error": f"{action} failed"}
        return dict(fields)

    async def op(self, **fields: Any) -> Dict[str, Any]:
        return self._answer("op", fields)

    async def other(self, **fields: Any) -> Dict[str, Any]:
        return self._answer("other", fields)

    async def sink(self, **fields: Any) -> Dict[str, Any]:
        self._answer("sink", fields)
        return {}

    async def _rows(self, key: Any) -> List[Dict[str, Any]]:
        self.lookups.append({"key": key})
        return self.rows.get(key, [])

    async def _slow(self, key: Any) -> List[Dict[str, Any]]:
        for _ in range(3):
            await asyncio.sleep(0)
        return self.rows.get(key, [])

    def count(self, action: str) -> int:
        return sum(1 for name, _ in self.calls if name == action)


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def probe():
    return Probe()


@pytest.fixture
def requesting():
    return Requesting()


@pytest.fixture
def sessioning():
    return Sessioning()
