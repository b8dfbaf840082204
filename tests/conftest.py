"""Pytest configuration for telemirror tests."""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

import pytest

from telemirror.config import reset_config
from telemirror.core.db import MappingDb
from telemirror.core.errors import DeliveryError, DeliveryNotFoundError

logging.getLogger("telemirror").handlers.clear()

_TESTS_DIR = Path(__file__).parent

BASE_EPOCH_S = 1_735_689_600  # 2025-01-01T00:00:00Z


def pytest_collection_modifyitems(config, items):
    """Mark tests by directory, then set per-marker timeouts: unit=1s, integration=5s."""
    for item in items:
        path = Path(str(item.fspath))
        if _TESTS_DIR / "unit" in path.parents:
            item.add_marker(pytest.mark.unit)
        elif _TESTS_DIR / "integration" in path.parents:
            item.add_marker(pytest.mark.integration)

        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.timeout(5))


class SessionLog:
    """Builds JSONL session logs the way the agent writes them.

    Timestamps are given in seconds after a fixed epoch; `ms()` converts the
    same offsets to the epoch milliseconds events carry.
    """

    def __init__(self, path: Path, session_id: str = "sess-1") -> None:
        self.path = path
        self.session_id = session_id
        self.lines: list[dict] = []

    @staticmethod
    def iso(seconds: float) -> str:
        return datetime.fromtimestamp(BASE_EPOCH_S + seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")

    @staticmethod
    def ms(seconds: float) -> int:
        return int(round((BASE_EPOCH_S + seconds) * 1000))

    # Content blocks

    @staticmethod
    def text(value: str) -> dict:
        return {"type": "text", "text": value}

    @staticmethod
    def thinking(value: str) -> dict:
        return {"type": "thinking", "thinking": value}

    @staticmethod
    def tool_use(tool_id: str, name: str, **tool_input: object) -> dict:
        return {"type": "tool_use", "id": tool_id, "name": name, "input": tool_input}

    @staticmethod
    def image(media_type: str = "image/png") -> dict:
        return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": "iVBORw0KGgo="}}

    @staticmethod
    def tool_result(tool_use_id: Optional[str] = None, content: str = "ok") -> dict:
        block: dict = {"type": "tool_result", "content": content}
        if tool_use_id is not None:
            block["tool_use_id"] = tool_use_id
        return block

    # Records

    def _add(self, record_type: str, uuid: str, seconds: float, content: object) -> None:
        self.lines.append(
            {
                "type": record_type,
                "uuid": uuid,
                "timestamp": self.iso(seconds),
                "sessionId": self.session_id,
                "message": {"role": record_type, "content": content},
            }
        )

    def user(self, uuid: str, seconds: float, text: str) -> "SessionLog":
        self._add("user", uuid, seconds, text)
        return self

    def assistant(self, uuid: str, seconds: float, *blocks: dict) -> "SessionLog":
        self._add("assistant", uuid, seconds, list(blocks))
        return self

    def results(self, uuid: str, seconds: float, *blocks: dict) -> "SessionLog":
        """User record carrying tool results."""
        self._add("user", uuid, seconds, list(blocks))
        return self

    def raw(self, line: dict) -> "SessionLog":
        self.lines.append(line)
        return self

    def write(self) -> Path:
        """Write every line built so far (replacing the file)."""
        with open(self.path, "w", encoding="utf-8") as f:
            for line in self.lines:
                f.write(json.dumps(line) + "\n")
        return self.path

    def size(self) -> int:
        return self.path.stat().st_size


class RecordingSink:
    """In-memory `DeliverySink` recording every call.

    `fail_posts_after` makes posts beyond that count raise `DeliveryError`;
    updates of refs in `missing_refs` raise `DeliveryNotFoundError`, and every
    other update raises `DeliveryError` while `fail_updates` is set.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str, str]] = []
        self.texts: dict[str, str] = {}
        self.fail_posts_after: Optional[int] = None
        self.missing_refs: set[str] = set()
        self.fail_updates = False
        self.post_count = 0
        self._next_ref = 100

    async def post(self, text: str) -> str:
        if self.fail_posts_after is not None and self.post_count >= self.fail_posts_after:
            raise DeliveryError("sink unavailable")
        self.post_count += 1
        ref = str(self._next_ref)
        self._next_ref += 1
        self.calls.append(("post", ref, text))
        self.texts[ref] = text
        return ref

    async def update(self, ref: str, text: str) -> str:
        if ref in self.missing_refs:
            raise DeliveryNotFoundError(ref)
        if self.fail_updates:
            raise DeliveryError("edit rejected")
        self.calls.append(("update", ref, text))
        self.texts[ref] = text
        return ref

    @property
    def posts(self) -> list[str]:
        return [text for kind, _, text in self.calls if kind == "post"]

    @property
    def updates(self) -> list[tuple[str, str]]:
        return [(ref, text) for kind, ref, text in self.calls if kind == "update"]


@pytest.fixture(autouse=True)
def _fresh_config():
    reset_config()
    yield
    reset_config()


@pytest.fixture
def session_log(tmp_path):
    """Empty session log builder writing to a temp file."""
    return SessionLog(tmp_path / "sess-1.jsonl")


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
async def store():
    """In-memory SQLite mapping store."""
    db = MappingDb(":memory:")
    await db.initialize()
    yield db
    await db.close()
