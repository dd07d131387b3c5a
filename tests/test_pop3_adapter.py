from __future__ import annotations

import poplib
import ssl

import pytest

import mailbox_poller as app
from tests.helpers import FakePOP3, fixture_bytes, make_config


def make_adapter(pop3: FakePOP3) -> tuple[app.Pop3Adapter, list[tuple[object, ...]]]:
    factory_calls: list[tuple[object, ...]] = []

    def factory(host, port, timeout, context):
        factory_calls.append((host, port, timeout, context))
        return pop3

    adapter = app.Pop3Adapter(
        make_config("pop3").pop3,
        ssl_context=ssl.create_default_context(),
        timeout_seconds=5.0,
        pop3_factory=factory,
    )
    return adapter, factory_calls


def test_connect_logs_in_with_user_and_pass() -> None:
    pop3 = FakePOP3()
    adapter, factory_calls = make_adapter(pop3)

    adapter.connect()

    assert factory_calls[0][:3] == ("pop.example.test", 995, 5.0)
    assert pop3.commands() == ["USER", "PASS"]
    assert adapter.state == app.STATE_LOGGED_IN


def test_login_failure_quits_immediately() -> None:
    pop3 = FakePOP3(login_fails=True)
    adapter, _ = make_adapter(pop3)

    with pytest.raises(app.MailboxConnectionError, match="POP3 login failed"):
        adapter.connect()

    assert pop3.commands() == ["USER", "PASS", "QUIT"]
    assert adapter.state == app.STATE_ERRORED
    adapter.close()
    assert pop3.commands().count("QUIT") == 1


def test_connect_network_failure_raises_connection_error() -> None:
    def factory(*_args, **_kwargs):
        raise TimeoutError("timed out")

    adapter = app.Pop3Adapter(
        make_config("pop3").pop3,
        ssl_context=ssl.create_default_context(),
        pop3_factory=factory,
    )

    with pytest.raises(app.MailboxConnectionError, match="timed out"):
        adapter.connect()


def test_stat_zero_issues_no_retrieval_and_quits() -> None:
    pop3 = FakePOP3(messages=[])
    adapter, _ = make_adapter(pop3)

    adapter.connect()
    assert adapter.list_message_ids() == []
    adapter.close()

    assert pop3.commands() == ["USER", "PASS", "STAT", "QUIT"]
    assert adapter.state == app.STATE_ENDED


def test_list_message_ids_enumerates_one_based_indexes() -> None:
    pop3 = FakePOP3(messages=[b"a", b"b", b"c"])
    adapter, _ = make_adapter(pop3)
    adapter.connect()

    assert adapter.list_message_ids() == ["1", "2", "3"]
    assert adapter.state == app.STATE_STAT_KNOWN


def test_fetch_retrieves_and_decodes_message() -> None:
    pop3 = FakePOP3(messages=[fixture_bytes("plain_text.eml")])
    adapter, _ = make_adapter(pop3)
    adapter.connect()

    raw = adapter.fetch("1")

    assert ("RETR", 1) in pop3.calls
    assert "DELE" not in pop3.commands()
    assert raw.protocol == "pop3"
    assert raw.message_id == "1"
    assert raw.sender == "jane.sender@example.test"
    assert raw.subject == "Plain request"
    assert raw.body_is_html is False
    assert "Phone: +1 555 0100" in raw.body


def test_fetch_failure_raises_message_fetch_error() -> None:
    pop3 = FakePOP3(messages=[b"a", b"b"], retr_fail_indexes={1})
    adapter, _ = make_adapter(pop3)
    adapter.connect()

    with pytest.raises(app.MessageFetchError) as excinfo:
        adapter.fetch("1")

    assert excinfo.value.message_id == "1"


def test_acknowledge_marks_message_deleted() -> None:
    pop3 = FakePOP3(messages=[b"a"])
    adapter, _ = make_adapter(pop3)
    adapter.connect()

    adapter.acknowledge("1")

    assert ("DELE", 1) in pop3.calls
    assert adapter.state == app.STATE_DELETING


def test_acknowledge_failure_raises_message_error() -> None:
    pop3 = FakePOP3(messages=[b"a"], dele_fail_indexes={1})
    adapter, _ = make_adapter(pop3)
    adapter.connect()

    with pytest.raises(app.MessageAcknowledgeError, match="DELE failed"):
        adapter.acknowledge("1")


def test_close_quit_failure_is_only_logged(caplog: pytest.LogCaptureFixture) -> None:
    class FailingQuitPOP3(FakePOP3):
        def quit(self) -> bytes:
            super().quit()
            raise poplib.error_proto(b"-ERR quit failed")

    adapter, _ = make_adapter(FailingQuitPOP3())
    adapter.connect()

    with caplog.at_level("ERROR", logger="mailbox_poller"):
        adapter.close()

    assert "Error while ending POP3 session" in caplog.text
    assert adapter.state == app.STATE_ENDED
