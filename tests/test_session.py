import os
import threading
import time

import pytest

from shellwire.auth import AuthOutcome
from shellwire.channel import Target
from shellwire.errors import ConnectionLostError, SessionClosedError, SessionConnectError
from shellwire.session import Session, SessionPool, SessionState

from conftest import FakeShell, Reply


def test_connect_runs_setup_before_ready(session, fake_shell):
    assert session.state is SessionState.READY
    setup = fake_shell.commands[0]
    assert setup.startswith("stty -echo")
    assert "PS1=''" in setup
    assert "export PATH=" in setup
    assert fake_shell.echo is False


def test_execute_returns_output_and_exit_code(session):
    result = session.execute("echo hello")
    assert result.output == "hello"
    assert result.exit_code == 0
    assert session.state is SessionState.READY


def test_failing_command_is_a_value_not_an_exception(session):
    result = session.execute("false")
    assert result.exit_code == 1
    assert not result.ok


def test_concurrent_callers_never_interleave(make_session):
    shell = FakeShell(chunk_size=5)
    session = make_session(shell)
    results = {}

    def call(i):
        results[i] = session.execute(f"echo value-{i}")

    threads = [threading.Thread(target=call, args=(i,)) for i in range(12)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert {i: r.output for i, r in results.items()} == {i: f"value-{i}" for i in range(12)}


def test_commands_run_in_submission_order(session, fake_shell):
    futures = [session.submit(f"echo n{i}") for i in range(5)]
    assert [f.result(5).output for f in futures] == [f"n{i}" for i in range(5)]
    assert fake_shell.commands[-5:] == [f"echo n{i}" for i in range(5)]


def test_timeout_yields_partial_result_and_session_recovers(make_session):
    shell = FakeShell().on(r"^sleep", Reply(output="", hang=True))
    session = make_session(shell)
    result = session.execute("sleep 100", timeout=0.3)
    assert result.timed_out
    assert result.exit_code is None
    assert "\x03" in shell.sent

    follow_up = session.execute("echo after")
    assert follow_up.output == "after"
    assert follow_up.exit_code == 0


def test_password_prompt_is_answered_once(make_session, engine_config):
    shell = FakeShell().on(r"^sudo", Reply(output="uid=0(root)\n", prompt="[sudo] password for alice: ",
                                           secret="hunter2"))
    session = make_session(shell, secret="hunter2")
    result = session.execute("sudo id")
    assert result.auth is AuthOutcome.SUPPLIED
    assert result.output == "uid=0(root)"
    assert shell.secrets_received == ["hunter2"]

    log_dir = engine_config.CACHE_DIRS["sessions_dir"]
    logs = "".join(open(os.path.join(log_dir, name), encoding="utf-8").read() for name in os.listdir(log_dir))
    assert "sudo id" in logs
    assert "hunter2" not in logs


def test_rejected_password_is_reported(make_session):
    shell = FakeShell().on(r"^sudo", Reply(prompt="Password: ", secret="right"))
    session = make_session(shell, secret="wrong")
    result = session.execute("sudo true")
    assert result.auth is AuthOutcome.REJECTED
    assert shell.secrets_received == ["wrong"]
    assert session.execute("echo still-alive").output == "still-alive"


def test_quick_commands_do_not_look_up_the_secret(make_session, engine_config):
    lookups = []
    shell = FakeShell()
    session = Session(
        Target.local(),
        secret_provider=lambda t: lookups.append(t) or "x",
        config=engine_config,
        channel_factory=lambda t, s, c: shell,
    )
    try:
        session.connect()
        lookups.clear()
        session.execute("echo hi", quick=True)
        assert lookups == []
        session.execute("echo hi")
        assert lookups == [Target.local()]
    finally:
        session.close()


def test_channel_loss_fails_in_flight_and_queued_requests(make_session):
    shell = FakeShell().on(r"^sleep", Reply(hang=True))
    session = make_session(shell)
    in_flight = session.submit("sleep 100", timeout=30)
    queued = session.submit("echo never", timeout=30)
    deadline = time.time() + 5
    while not shell.commands[-1].startswith("sleep") and time.time() < deadline:
        time.sleep(0.01)

    shell.die()

    with pytest.raises(ConnectionLostError):
        in_flight.result(5)
    with pytest.raises(ConnectionLostError):
        queued.result(5)
    assert session.state is SessionState.DISCONNECTED
    with pytest.raises(ConnectionLostError):
        session.execute("echo late")


def test_closed_session_rejects_work(session):
    session.close()
    assert session.state is SessionState.CLOSED
    with pytest.raises(SessionClosedError):
        session.execute("echo hi")
    with pytest.raises(SessionClosedError):
        session.connect()


def test_connect_failure_leaves_session_disconnected(engine_config):
    def refuse(target, secret, cfg):
        raise SessionConnectError("refused")

    session = Session(Target.parse("bob@nowhere"), config=engine_config, channel_factory=refuse)
    with pytest.raises(SessionConnectError):
        session.connect()
    assert session.state is SessionState.DISCONNECTED


def test_write_raw_goes_straight_to_the_channel(session, fake_shell):
    session.write_raw(b"q")
    assert fake_shell.sent[-1] == "q"


def test_info_reports_state(session):
    session.execute("echo hi")
    info = session.info()
    assert info["state"] == "ready"
    assert info["target"] == "alice@db1.example.com:22"
    assert info["last_command"] == "echo hi"
    assert info["commands_run"] >= 2


class TestSessionPool:
    def make_pool(self, engine_config, shells):
        def factory(target, secret, cfg):
            shell = FakeShell()
            shells.append((target, shell))
            return shell

        return SessionPool(config=engine_config, channel_factory=factory)

    def test_reuses_sessions_per_target(self, engine_config):
        shells = []
        pool = self.make_pool(engine_config, shells)
        try:
            first = pool.get_or_connect("alice@db1:22")
            again = pool.get_or_connect(Target.parse("alice@db1"))
            other = pool.get_or_connect("alice@db2")
            assert first is again
            assert other is not first
            assert len(shells) == 2
            assert [row["target"] for row in pool.list_sessions()] == ["alice@db1:22", "alice@db2:22"]
        finally:
            pool.close_all()
        assert pool.list_sessions() == []

    def test_close_removes_the_session(self, engine_config):
        pool = self.make_pool(engine_config, [])
        session = pool.get_or_connect("local")
        assert pool.close("local") is True
        assert session.state is SessionState.CLOSED
        assert pool.close("local") is False
        assert pool.get("local") is None


def test_callers_arriving_mid_connect_wait_for_it(engine_config):
    def slow_factory(target, secret, cfg):
        time.sleep(0.3)
        return FakeShell()

    pool = SessionPool(config=engine_config, channel_factory=slow_factory)
    outputs, errors = [], []

    def call():
        try:
            outputs.append(pool.get_or_connect("alice@db1").execute("echo hi").output)
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=call) for _ in range(3)]
    try:
        for t in threads:
            t.start()
        for t in threads:
            t.join(10)
        assert errors == []
        assert outputs == ["hi", "hi", "hi"]
    finally:
        pool.close_all()


def test_waiters_share_a_failed_connect(engine_config):
    started = threading.Event()

    def failing_factory(target, secret, cfg):
        started.set()
        time.sleep(0.2)
        raise SessionConnectError("refused")

    session = Session(Target.parse("bob@nowhere"), config=engine_config, channel_factory=failing_factory)
    first_errors = []

    def first_caller():
        try:
            session.connect()
        except SessionConnectError as exc:
            first_errors.append(exc)

    first = threading.Thread(target=first_caller)
    first.start()
    started.wait(5)
    with pytest.raises(SessionConnectError):
        session.connect()
    first.join(5)
    assert len(first_errors) == 1
    assert session.state is SessionState.DISCONNECTED
