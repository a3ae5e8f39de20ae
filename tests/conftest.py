import json
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import pytest

from keyrack.config import ENV_OVERRIDES, KeyrackConfig
from keyrack.gcloud import CommandResult, GcloudClient
from keyrack.retry import RetryExecutor, RetryPolicy

ACTIVE_ACCOUNT = "tester@example.com"
DEFAULT_KEY_JSON = json.dumps({"type": "service_account", "private_key_id": "abc123"})
SA_NOT_FOUND = "ERROR: (gcloud.iam.service-accounts.describe) NOT_FOUND: Unknown service account"


@dataclass
class Rule:
    tokens: Sequence[str]
    returncode: Optional[int] = 0
    stdout: str = ""
    stderr: str = ""
    writes: Optional[str] = None
    times: Optional[int] = None
    handler: Optional[Callable[[List[str]], CommandResult]] = None


class FakeRunner:
    """
    Scripted stand-in for subprocess_runner.

    A rule matches when every token is a substring of the joined command.
    Rules added later take precedence. Unmatched commands succeed with no
    output; a successful command with ``stdout_path`` writes a key payload.
    """

    def __init__(self):
        self.calls: List[List[str]] = []
        self._rules: List[Rule] = []
        self._lock = threading.Lock()

    def on(self, *tokens, returncode=0, stdout="", stderr="", writes=None, times=None, handler=None):
        self._rules.insert(0, Rule(tokens, returncode, stdout, stderr, writes, times, handler))
        return self

    def _match(self, command: List[str]) -> Optional[Rule]:
        joined = " ".join(command)
        with self._lock:
            for rule in self._rules:
                if rule.times is not None and rule.times <= 0:
                    continue
                if all(token in joined for token in rule.tokens):
                    if rule.times is not None:
                        rule.times -= 1
                    return rule
        return None

    def __call__(self, command, stdout_path=None, timeout=None, env=None):
        command = list(command)
        with self._lock:
            self.calls.append(command)

        rule = self._match(command)
        if rule is not None and rule.handler is not None:
            return rule.handler(command)
        if rule is None:
            rule = Rule(tokens=())

        if stdout_path is not None and rule.returncode == 0:
            payload = DEFAULT_KEY_JSON if rule.writes is None else rule.writes
            Path(stdout_path).write_text(payload)
        return CommandResult(command, rule.returncode, rule.stdout, rule.stderr)

    def calls_with(self, *tokens) -> List[List[str]]:
        with self._lock:
            return [c for c in self.calls if all(t in " ".join(c) for t in tokens)]


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Point KEYRACK_HOME at a temp dir and clear override variables."""
    monkeypatch.setenv("KEYRACK_HOME", str(tmp_path / "keyrack_home"))
    for name in ENV_OVERRIDES:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def test_config(tmp_path):
    return KeyrackConfig(
        key_dir=tmp_path / "keys",
        max_retry_attempts=3,
        retry_base_delay=0.0,
        retry_jitter=0.0,
        concurrency=4,
        delete_oldest_key="never",
        run_username="tester",
        bare_key_file=tmp_path / "key.txt",
        comma_key_file=tmp_path / "comma_separated_keys_tester.txt",
        log_file=tmp_path / "logs" / "keyrack.log",
    )


@pytest.fixture
def fake_runner():
    runner = FakeRunner()
    runner.on("auth", "list", stdout=f"{ACTIVE_ACCOUNT}\n")
    runner.on("config", "get-value", "project", stdout="host-project\n")
    runner.on(
        "api-keys", "create",
        stdout=json.dumps({"response": {"keyString": "AIzaTestKey123"}}),
    )
    return runner


@pytest.fixture
def gcloud(fake_runner, monkeypatch):
    monkeypatch.setattr("keyrack.gcloud.shutil.which", lambda name: f"/usr/bin/{name}")
    return GcloudClient(runner=fake_runner, timeout=5.0)


@pytest.fixture
def retry_executor():
    return RetryExecutor(RetryPolicy(max_attempts=3, base_delay=0.0, jitter=0.0), sleep=lambda s: None)
