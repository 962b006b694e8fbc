import dataclasses

import pytest

from fakes import FakeClock
from wr_server.app.errors import InvalidTokenError, TokenExpiredError
from wr_server.app.reconciler.handshake import (
    AgentHandshake,
    AgentLifecycle,
    generate_agent_token,
    parse_and_verify_agent_token,
    render_init_script,
)

SECRET = "unit-test-secret"


def test_token_round_trip_and_payload():
    tok = generate_agent_token(secret=SECRET, workspace_id="ws1", instance="wr-ws-ws1", ttl_seconds=60, issued_at=1000)
    assert tok.startswith("v1.") and tok.count(".") == 2
    payload = parse_and_verify_agent_token(secret=SECRET, token=tok, now_s=1030)
    assert payload.workspace_id == "ws1"
    assert payload.instance == "wr-ws-ws1"
    assert payload.expires_at == 1060


def test_token_expired():
    tok = generate_agent_token(secret=SECRET, workspace_id="ws1", instance="i", ttl_seconds=60, issued_at=1000)
    with pytest.raises(TokenExpiredError):
        parse_and_verify_agent_token(secret=SECRET, token=tok, now_s=1061)


def test_token_wrong_secret_and_tampering():
    tok = generate_agent_token(secret=SECRET, workspace_id="ws1", instance="i", ttl_seconds=60)
    with pytest.raises(InvalidTokenError):
        parse_and_verify_agent_token(secret="other", token=tok)
    prefix, payload, sig = tok.split(".")
    with pytest.raises(InvalidTokenError):
        parse_and_verify_agent_token(secret=SECRET, token=f"{prefix}.{payload}x.{sig}")
    with pytest.raises(InvalidTokenError):
        parse_and_verify_agent_token(secret=SECRET, token="not-a-token")


def test_init_script_embeds_access_url_and_never_the_token():
    script = render_init_script("http://127.0.0.1:8081/")
    assert 'WR_URL="http://127.0.0.1:8081"' in script
    assert "/agent/register?format=script" in script
    assert "${WORKSPACE_AGENT_TOKEN}" in script
    assert "exec tail -f /dev/null" in script
    assert "@@" not in script


def test_register_returns_bootstrap_and_marks_registered():
    hs = AgentHandshake(SECRET)
    tok = hs.issue_token("ws1", "inst-a", {"startup_script": "echo hi"})
    assert hs.is_registered("ws1") is False
    assert hs.register(tok) == {"startup_script": "echo hi"}
    assert hs.is_registered("ws1", "inst-a") is True
    assert hs.is_registered("ws1", "inst-b") is False


def test_token_for_replaced_instance_is_rejected():
    hs = AgentHandshake(SECRET)
    old = hs.issue_token("ws1", "inst-a")
    hs.issue_token("ws1", "inst-b")
    with pytest.raises(InvalidTokenError, match="different instance"):
        hs.register(old)


def test_restart_clears_registration_for_recreated_instance():
    hs = AgentHandshake(SECRET)
    tok = hs.issue_token("ws1", "inst-a")
    hs.register(tok)
    hs.restart("ws1")
    assert hs.is_registered("ws1") is False
    hs.register(tok)
    assert hs.is_registered("ws1") is True


def test_reissue_for_same_instance_keeps_registration():
    hs = AgentHandshake(SECRET)
    hs.register(hs.issue_token("ws1", "inst-a"))
    hs.issue_token("ws1", "inst-a", {"startup_script": "new"})
    assert hs.is_registered("ws1", "inst-a") is True



def test_restored_registration_accepts_the_running_agent_token():
    hs = AgentHandshake(SECRET)
    tok = generate_agent_token(secret=SECRET, workspace_id="ws1", instance="inst-a", ttl_seconds=60)
    hs.restore_registration("ws1", "inst-a", "2026-01-01T00:00:00Z")
    assert hs.is_registered("ws1", "inst-a") is True
    assert hs.status("ws1")["registered_at"] == "2026-01-01T00:00:00Z"
    assert hs.report_lifecycle(tok, "ready", 0).lifecycle is AgentLifecycle.ready
    hs.issue_token("ws1", "inst-a")
    assert hs.is_registered("ws1", "inst-a") is True


def test_restore_does_not_override_a_live_registration():
    hs = AgentHandshake(SECRET)
    hs.register(hs.issue_token("ws1", "inst-a"))
    live = hs.status("ws1")["registered_at"]
    hs.restore_registration("ws1", "inst-a", "2000-01-01T00:00:00Z")
    assert hs.status("ws1")["registered_at"] == live

def test_lifecycle_reports():
    hs = AgentHandshake(SECRET)
    tok = hs.issue_token("ws1", "inst-a")
    hs.register(tok)
    session = hs.report_lifecycle(tok, "start_error", 3)
    assert session.lifecycle is AgentLifecycle.start_error
    assert hs.status("ws1")["exit_code"] == 3
    # A failing startup script does not undo the registration
    assert hs.is_registered("ws1") is True
    with pytest.raises(ValueError):
        hs.report_lifecycle(tok, "exploded")



def test_repeated_lifecycle_reports_keep_only_the_latest():
    hs = AgentHandshake(SECRET)
    tok = hs.issue_token("ws1", "inst-a")
    hs.register(tok)
    for _ in range(50):
        hs.report_lifecycle(tok, "starting")
    session = hs.report_lifecycle(tok, "ready", 0)
    assert sorted(f.name for f in dataclasses.fields(session)) == [
        "bootstrap",
        "exit_code",
        "instance",
        "lifecycle",
        "lifecycle_at",
        "registered_at",
        "workspace_id",
    ]
    assert hs.status("ws1")["lifecycle"] == "ready"

def test_wait_for_registration_times_out_on_fake_clock():
    clock = FakeClock()
    hs = AgentHandshake(SECRET, clock=clock, sleep=clock.sleep)
    hs.issue_token("ws1", "inst-a")
    assert hs.wait_for_registration("ws1", "inst-a", timeout=5, interval=1) is False
    assert sum(clock.sleeps) == pytest.approx(5)


def test_wait_for_registration_succeeds_when_agent_calls_back():
    clock = FakeClock()
    hs = AgentHandshake(SECRET, clock=clock)
    tok = hs.issue_token("ws1", "inst-a")

    def sleep(seconds):
        clock.sleep(seconds)
        if len(clock.sleeps) == 2:
            hs.register(tok)

    hs._sleep = sleep
    assert hs.wait_for_registration("ws1", "inst-a", timeout=30, interval=1) is True
    assert len(clock.sleeps) == 2


def test_reset_forgets_session():
    hs = AgentHandshake(SECRET)
    tok = hs.issue_token("ws1", "inst-a")
    hs.reset("ws1")
    assert hs.status("ws1") is None
    with pytest.raises(InvalidTokenError):
        hs.register(tok)
