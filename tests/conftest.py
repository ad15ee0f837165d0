"""Pytest configuration and fixtures for reqgraph tests."""

from collections import defaultdict
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from reqgraph.corpus import CorpusIndex
from reqgraph.errors import OracleError
from reqgraph.models import Cookie, CorpusEntry, Request, Response
from reqgraph.oracle import Oracle


class FakeOracle(Oracle):
    """Scripted oracle with deterministic answers and per-call failure injection.

    ``dynamic_parts`` maps a request's full URL to the values reported for
    it. ``target`` is either a single answer or a list consumed one chunk
    at a time. Method names listed in ``fail`` raise :class:`OracleError`.
    """

    def __init__(
        self,
        target="NONE",
        dynamic_parts: Optional[Dict[str, List[str]]] = None,
        bound_inputs: Optional[Dict[str, str]] = None,
        simplest: int = 0,
        fail=(),
    ):
        self.target = target
        self.dynamic_parts = dynamic_parts or {}
        self.bound_inputs = bound_inputs or {}
        self.simplest = simplest
        self.fail = set(fail)
        self.calls = defaultdict(list)

    def _maybe_fail(self, name: str) -> None:
        if name in self.fail:
            raise OracleError(f"{name}: scripted failure")

    def identify_target(self, goal, endpoints):
        self.calls["identify_target"].append([ep.url for ep in endpoints])
        self._maybe_fail("identify_target")
        if isinstance(self.target, list):
            return self.target.pop(0) if self.target else "NONE"
        return self.target

    def identify_dynamic_parts(self, curl):
        self.calls["identify_dynamic_parts"].append(curl)
        self._maybe_fail("identify_dynamic_parts")
        for url, parts in self.dynamic_parts.items():
            if curl.endswith(f"'{url}'"):
                return list(parts)
        return []

    def identify_bound_inputs(self, curl, inputs):
        self.calls["identify_bound_inputs"].append(curl)
        self._maybe_fail("identify_bound_inputs")
        return dict(self.bound_inputs)

    def pick_simplest(self, curls):
        self.calls["pick_simplest"].append(list(curls))
        self._maybe_fail("pick_simplest")
        return self.simplest


class ScriptedLLM:
    """Stand-in for LocalLLM that replays canned chat replies."""

    def __init__(self, replies, is_local: bool = False):
        self.replies = list(replies)
        self.is_local = is_local
        self.messages = []

    def chat_completion(self, messages, max_tokens=1024, temperature=0.1):
        self.messages.append([dict(m) for m in messages])
        return self.replies.pop(0) if self.replies else None


@pytest.fixture(autouse=True)
def _mock_local_llm(monkeypatch):
    """Keep every test off the network.

    Anything that builds a default LocalLLM gets a stub whose provider
    never answers, so a test that forgets to inject an oracle fails fast
    with an OracleError instead of hanging on a socket.
    """

    class _MockLocalLLM:
        def __init__(self, **kwargs):
            self.provider_name = kwargs.get("provider") or "mock"
            self.model = kwargs.get("model") or "mock-model"
            self.api_key = kwargs.get("api_key")
            self.endpoint = kwargs.get("endpoint")
            self.is_local = False

        def chat_completion(self, messages, **kwargs):
            return None

    monkeypatch.setattr("reqgraph.llm.LocalLLM", _MockLocalLLM)
    monkeypatch.setattr("reqgraph.orchestrator.LocalLLM", _MockLocalLLM)


@pytest.fixture(autouse=True)
def temp_config(tmp_path: Path, monkeypatch) -> Path:
    """Point the TOML config at a throwaway file."""
    config_file = tmp_path / "reqgraph-home" / "config.toml"
    monkeypatch.setattr("reqgraph.config_manager.CONFIG_FILE", config_file)
    return config_file


@pytest.fixture
def fake_oracle():
    """Factory for scripted oracles."""
    return FakeOracle


@pytest.fixture
def scripted_llm():
    return ScriptedLLM


@pytest.fixture
def make_entry():
    """Factory for corpus entries with JSON responses by default."""

    def _make(
        method: str,
        url: str,
        response_text: str = "",
        headers: Optional[Dict[str, str]] = None,
        body=None,
        query: Optional[Dict[str, str]] = None,
        mime_type: str = "application/json",
    ) -> CorpusEntry:
        request = Request(method=method, url=url, headers=headers or {}, query_params=query, body=body)
        return CorpusEntry(request, Response(text=response_text, mime_type=mime_type))

    return _make


@pytest.fixture
def login_corpus(make_entry) -> CorpusIndex:
    """A session token issued by /login and then sent to /orders/42."""
    login = make_entry(
        "POST",
        "https://shop.test/login",
        response_text='{"session": "sess_9f3", "user": "alice"}',
        headers={"Content-Type": "application/json"},
        body={"user": "alice", "password": "hunter2"},
    )
    orders = make_entry(
        "GET",
        "https://shop.test/orders/42",
        response_text='{"id": 42, "status": "shipped"}',
        headers={"Authorization": "Bearer sess_9f3"},
    )
    return CorpusIndex([login, orders])


@pytest.fixture
def chain_corpus(make_entry) -> CorpusIndex:
    """Ten requests where each one needs a token issued by the next.

    Step 0 is the target; fully resolving it takes ten loop iterations.
    """
    entries = []
    for i in range(10):
        headers = {"X-Token": f"tok{i + 1:02d}z"} if i < 9 else {}
        entries.append(make_entry(
            "GET",
            f"https://api.test/step/{i}",
            response_text=f'{{"token": "tok{i:02d}z"}}' if i else '{"ok": true}',
            headers=headers,
        ))
    return CorpusIndex(entries)


@pytest.fixture
def chain_oracle(fake_oracle):
    return fake_oracle(
        target="https://api.test/step/0",
        dynamic_parts={f"https://api.test/step/{i}": [f"tok{i + 1:02d}z"] for i in range(9)},
    )


@pytest.fixture
def csrf_cookie() -> Cookie:
    return Cookie(name="csrf", value="tok_ab12.5f0e", domain="shop.test", path="/")


@pytest.fixture
def fixtures_dir() -> Path:
    return Path(__file__).parent / "fixtures"


@pytest.fixture
def har_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "shop.har"


@pytest.fixture
def cookies_path(fixtures_dir: Path) -> Path:
    return fixtures_dir / "cookies.json"
