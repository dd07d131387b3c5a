#!/usr/bin/env python3
"""Poll one mailbox over IMAP, POP3 or Microsoft Graph and parse each body into records."""

from __future__ import annotations

import argparse
import email.errors
import email.header
import imaplib
import json
import logging
import os
import poplib
import ssl
import sys
import time
from contextlib import closing
from dataclasses import asdict, dataclass, field, replace
from email import policy
from email.message import EmailMessage
from email.parser import BytesParser
from email.utils import parseaddr
from pathlib import Path
from typing import Callable, Iterable, Mapping
from urllib.parse import quote

import msal
import requests
from bs4.builder import ParserRejectedMarkup
from dotenv import load_dotenv

from content_parser import extract_text, parse_records


logger = logging.getLogger(__name__)

PROTOCOL_POP3 = "pop3"
PROTOCOL_IMAP = "imap"
PROTOCOL_OAUTH = "oauth"
PROTOCOL_PRECEDENCE = (PROTOCOL_POP3, PROTOCOL_IMAP, PROTOCOL_OAUTH)
PROTOCOL_LABELS = {
    PROTOCOL_POP3: "POP3",
    PROTOCOL_IMAP: "IMAP",
    PROTOCOL_OAUTH: "OAuth2",
}
DEFAULT_IMAP_PORT = 993
DEFAULT_IMAP_MAILBOX = "INBOX"
DEFAULT_POP3_PORT = 995
DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RUN_TIMEOUT_SECONDS = 300.0
DEFAULT_ENV_FILE = ".env"
GRAPH_AUTHORITY_TEMPLATE = "https://login.microsoftonline.com/{tenant}"
GRAPH_SCOPE = "https://graph.microsoft.com/.default"
GRAPH_MESSAGES_URL_TEMPLATE = "https://graph.microsoft.com/v1.0/users/{principal}/messages"

ENV_USE_POP3 = "USE_POP3"
ENV_USE_IMAP = "USE_IMAP"
ENV_USE_OAUTH = "USE_OAUTH"
ENV_IMAP_HOST = "IMAP_HOST"
ENV_IMAP_PORT = "IMAP_PORT"
ENV_IMAP_USER = "IMAP_USER"
ENV_IMAP_PASSWORD = "IMAP_PASSWORD"
ENV_IMAP_MAILBOX = "IMAP_MAILBOX"
ENV_POP3_HOST = "POP3_HOST"
ENV_POP3_PORT = "POP3_PORT"
ENV_POP3_USER = "POP3_USER"
ENV_POP3_PASSWORD = "POP3_PASSWORD"
ENV_CLIENT_ID = "CLIENT_ID"
ENV_CLIENT_SECRET = "CLIENT_SECRET"
ENV_TENANT_ID = "TENANT_ID"
ENV_OAUTH_USER = "OAUTH_USER"
ENV_TLS_INSECURE = "MAIL_TLS_INSECURE"
ENV_TIMEOUT_SECONDS = "MAIL_TIMEOUT_SECONDS"
ENV_RUN_TIMEOUT_SECONDS = "MAIL_RUN_TIMEOUT_SECONDS"
ENV_DRY_RUN = "MAIL_DRY_RUN"
TRUE_ENV_VALUES = ("1", "true", "yes", "on")
FALSE_ENV_VALUES = ("", "0", "false", "no", "off")

STATE_DISCONNECTED = "DISCONNECTED"
STATE_CONNECTING = "CONNECTING"
STATE_CONNECTED = "CONNECTED"
STATE_READY = "READY"
STATE_LOGGED_IN = "LOGGED_IN"
STATE_BOX_OPEN = "BOX_OPEN"
STATE_SEARCHING = "SEARCHING"
STATE_STAT_KNOWN = "STAT_KNOWN"
STATE_FETCHING = "FETCHING"
STATE_RETRIEVING = "RETRIEVING"
STATE_DELETING = "DELETING"
STATE_CLOSING = "CLOSING"
STATE_QUITTING = "QUITTING"
STATE_ENDED = "ENDED"
STATE_ERRORED = "ERRORED"

STAGE_FETCH = "fetch"
STAGE_PARSE = "parse"
STAGE_ACKNOWLEDGE = "acknowledge"
STAGE_EMIT = "emit"


class MailboxError(Exception):
    pass


class ConfigurationError(MailboxError, ValueError):
    pass


class MailboxConnectionError(MailboxError):
    pass


class ProtocolError(MailboxError):
    pass


class RetrievalTimeoutError(MailboxError):
    pass


class MessageError(MailboxError):
    def __init__(self, message_id: str, detail: str) -> None:
        super().__init__(f"message {message_id}: {detail}")
        self.message_id = message_id
        self.detail = detail


class MessageFetchError(MessageError):
    pass


class MessageParseError(MessageError):
    pass


class MessageAcknowledgeError(MessageError):
    pass


class MessageEmitError(MessageError):
    pass


@dataclass(frozen=True)
class ImapSettings:
    host: str
    user: str
    password: str
    port: int = DEFAULT_IMAP_PORT
    mailbox: str = DEFAULT_IMAP_MAILBOX


@dataclass(frozen=True)
class Pop3Settings:
    host: str
    user: str
    password: str
    port: int = DEFAULT_POP3_PORT


@dataclass(frozen=True)
class OAuthSettings:
    client_id: str
    client_secret: str
    tenant_id: str
    user: str


@dataclass(frozen=True)
class MailboxConfig:
    protocol: str
    imap: ImapSettings | None = None
    pop3: Pop3Settings | None = None
    oauth: OAuthSettings | None = None
    tls_verify: bool = True
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    run_timeout_seconds: float = DEFAULT_RUN_TIMEOUT_SECONDS
    dry_run: bool = False


@dataclass(frozen=True)
class RawMessage:
    protocol: str
    message_id: str
    sender: str
    subject: str
    received_at: str | None
    body: str
    body_is_html: bool


@dataclass(frozen=True)
class ParsedMessage:
    protocol: str
    message_id: str
    sender: str
    subject: str
    received_at: str | None
    text: str
    fields: dict[str, str]


@dataclass(frozen=True)
class MessageFailure:
    message_id: str
    stage: str
    detail: str


@dataclass
class RetrievalResult:
    protocol: str | None
    messages: list[ParsedMessage] = field(default_factory=list)
    failures: list[MessageFailure] = field(default_factory=list)
    error: str = ""
    acknowledged_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.error


def parse_boolean_env(environ: Mapping[str, str], name: str, default: bool = False) -> bool:
    raw_value = environ.get(name)
    if raw_value is None:
        return default
    value = raw_value.strip().lower()
    if value in TRUE_ENV_VALUES:
        return True
    if value in FALSE_ENV_VALUES:
        return False
    raise ConfigurationError(f"env var {name} must be a boolean (true/false), got {raw_value!r}.")


def parse_required_env(environ: Mapping[str, str], name: str, protocol: str) -> str:
    value = environ.get(name, "").strip()
    if not value:
        raise ConfigurationError(
            f"env var {name} is required when {PROTOCOL_LABELS[protocol]} is enabled."
        )
    return value


def parse_port_env(environ: Mapping[str, str], name: str, default: int) -> int:
    raw_value = environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        port = int(raw_value)
    except ValueError as error:
        raise ConfigurationError(f"env var {name} must be an integer port, got {raw_value!r}.") from error
    if port < 1 or port > 65535:
        raise ConfigurationError(f"env var {name} must be between 1 and 65535.")
    return port


def parse_positive_number_env(environ: Mapping[str, str], name: str, default: float) -> float:
    raw_value = environ.get(name, "").strip()
    if not raw_value:
        return default
    try:
        value = float(raw_value)
    except ValueError as error:
        raise ConfigurationError(f"env var {name} must be a number, got {raw_value!r}.") from error
    if value <= 0:
        raise ConfigurationError(f"env var {name} must be > 0.")
    return value


def select_protocol(use_pop3: bool, use_imap: bool, use_oauth: bool) -> str:
    enabled = {
        PROTOCOL_POP3: use_pop3,
        PROTOCOL_IMAP: use_imap,
        PROTOCOL_OAUTH: use_oauth,
    }
    for protocol in PROTOCOL_PRECEDENCE:
        if enabled[protocol]:
            return protocol
    raise ConfigurationError(
        "No email service is enabled. "
        f"Set one of {ENV_USE_POP3}, {ENV_USE_IMAP} or {ENV_USE_OAUTH} to true."
    )


def load_mailbox_config(environ: Mapping[str, str] | None = None) -> MailboxConfig:
    env = os.environ if environ is None else environ
    protocol = select_protocol(
        parse_boolean_env(env, ENV_USE_POP3),
        parse_boolean_env(env, ENV_USE_IMAP),
        parse_boolean_env(env, ENV_USE_OAUTH),
    )

    imap_settings: ImapSettings | None = None
    pop3_settings: Pop3Settings | None = None
    oauth_settings: OAuthSettings | None = None
    if protocol == PROTOCOL_IMAP:
        imap_settings = ImapSettings(
            host=parse_required_env(env, ENV_IMAP_HOST, protocol),
            port=parse_port_env(env, ENV_IMAP_PORT, DEFAULT_IMAP_PORT),
            user=parse_required_env(env, ENV_IMAP_USER, protocol),
            password=parse_required_env(env, ENV_IMAP_PASSWORD, protocol),
            mailbox=env.get(ENV_IMAP_MAILBOX, "").strip() or DEFAULT_IMAP_MAILBOX,
        )
    elif protocol == PROTOCOL_POP3:
        pop3_settings = Pop3Settings(
            host=parse_required_env(env, ENV_POP3_HOST, protocol),
            port=parse_port_env(env, ENV_POP3_PORT, DEFAULT_POP3_PORT),
            user=parse_required_env(env, ENV_POP3_USER, protocol),
            password=parse_required_env(env, ENV_POP3_PASSWORD, protocol),
        )
    else:
        oauth_settings = OAuthSettings(
            client_id=parse_required_env(env, ENV_CLIENT_ID, protocol),
            client_secret=parse_required_env(env, ENV_CLIENT_SECRET, protocol),
            tenant_id=parse_required_env(env, ENV_TENANT_ID, protocol),
            user=parse_required_env(env, ENV_OAUTH_USER, protocol),
        )

    return MailboxConfig(
        protocol=protocol,
        imap=imap_settings,
        pop3=pop3_settings,
        oauth=oauth_settings,
        tls_verify=not parse_boolean_env(env, ENV_TLS_INSECURE),
        timeout_seconds=parse_positive_number_env(env, ENV_TIMEOUT_SECONDS, DEFAULT_TIMEOUT_SECONDS),
        run_timeout_seconds=parse_positive_number_env(
            env,
            ENV_RUN_TIMEOUT_SECONDS,
            DEFAULT_RUN_TIMEOUT_SECONDS,
        ),
        dry_run=parse_boolean_env(env, ENV_DRY_RUN),
    )


def build_ssl_context(tls_verify: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not tls_verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def decode_header_value(value: str | None) -> str:
    if not value:
        return ""
    decoded_fragments = []
    for fragment, encoding in email.header.decode_header(str(value)):
        if isinstance(fragment, bytes):
            decoded_fragments.append(fragment.decode(encoding or "utf-8", errors="replace"))
        else:
            decoded_fragments.append(fragment)
    return "".join(decoded_fragments).strip()


def extract_sender_email(sender_header: str) -> str:
    _sender_name, sender_email = parseaddr(sender_header)
    return sender_email.strip().lower()


def select_body(message: EmailMessage) -> tuple[str, bool]:
    part = message.get_body(preferencelist=("html", "plain"))
    if part is None:
        return "", False
    return part.get_content(), part.get_content_type() == "text/html"


def raw_message_from_bytes(protocol: str, message_id: str, raw: bytes) -> RawMessage:
    try:
        message = BytesParser(policy=policy.default).parsebytes(raw)
        body, body_is_html = select_body(message)
        sender = extract_sender_email(decode_header_value(message.get("From")))
        subject = decode_header_value(message.get("Subject"))
        received_at = decode_header_value(message.get("Date")) or None
    except (LookupError, ValueError, email.errors.MessageError) as error:
        raise MessageParseError(message_id, f"could not decode MIME message: {error}") from error
    return RawMessage(
        protocol=protocol,
        message_id=message_id,
        sender=sender,
        subject=subject,
        received_at=received_at,
        body=body,
        body_is_html=body_is_html,
    )


class MailboxAdapter:
    # close() must be safe in any state, including after a failed connect().
    protocol = ""

    def __init__(self) -> None:
        self.state = STATE_DISCONNECTED

    def connect(self) -> None:
        raise NotImplementedError

    def list_message_ids(self) -> list[str]:
        raise NotImplementedError

    def fetch(self, message_id: str) -> RawMessage:
        raise NotImplementedError

    def acknowledge(self, message_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


def quote_mailbox_name(folder_name: str) -> str:
    escaped = folder_name.replace("\\", "\\\\").replace('"', r'\"')
    return f'"{escaped}"'


def decode_imap_response(data: object) -> str:
    if not isinstance(data, list):
        return ""
    parts: list[str] = []
    for item in data:
        if item is None:
            continue
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
        else:
            parts.append(str(item))
    return " | ".join(parts).strip()


def parse_uid_search_data(data: object) -> list[str]:
    if not isinstance(data, list) or not data or not data[0]:
        return []
    raw = data[0]
    if isinstance(raw, bytes):
        return [uid.decode("ascii", errors="ignore") for uid in raw.split()]
    if isinstance(raw, str):
        return [uid for uid in raw.split() if uid]
    return []


def parse_fetch_message_bytes(fetch_data: Iterable[object]) -> bytes | None:
    for part in fetch_data:
        if not isinstance(part, tuple) or len(part) < 2:
            continue
        _meta, body = part
        if isinstance(body, bytes):
            return body
    return None


class ImapAdapter(MailboxAdapter):
    protocol = PROTOCOL_IMAP

    def __init__(
        self,
        settings: ImapSettings,
        ssl_context: ssl.SSLContext,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        imap_factory: Callable[..., imaplib.IMAP4] = imaplib.IMAP4_SSL,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.ssl_context = ssl_context
        self.timeout_seconds = timeout_seconds
        self.imap_factory = imap_factory
        self.imap: imaplib.IMAP4 | None = None

    def connect(self) -> None:
        host, port = self.settings.host, self.settings.port
        self.state = STATE_CONNECTING
        logger.info("Connecting to IMAP server %s:%s", host, port)
        try:
            self.imap = self.imap_factory(
                host,
                port,
                ssl_context=self.ssl_context,
                timeout=self.timeout_seconds,
            )
            self.imap.login(self.settings.user, self.settings.password)
            self.state = STATE_READY
            logger.info("IMAP connection ready.")
            status, data = self.imap.select(quote_mailbox_name(self.settings.mailbox), readonly=False)
        except (imaplib.IMAP4.error, OSError) as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"IMAP connection error for {host}:{port}: {error}") from error

        if status != "OK":
            self.state = STATE_ERRORED
            detail = decode_imap_response(data) or status
            raise MailboxConnectionError(f"Failed to open mailbox {self.settings.mailbox}: {detail}")
        self.state = STATE_BOX_OPEN
        logger.info(
            "Mailbox %s opened. Total messages: %s",
            self.settings.mailbox,
            decode_imap_response(data) or "unknown",
        )

    def list_message_ids(self) -> list[str]:
        imap = self.require_connection()
        self.state = STATE_SEARCHING
        try:
            status, data = imap.uid("SEARCH", None, "UNSEEN")
        except (imaplib.IMAP4.error, OSError) as error:
            self.state = STATE_ERRORED
            raise ProtocolError(f"IMAP search error: {error}") from error
        if status != "OK":
            self.state = STATE_ERRORED
            raise ProtocolError(f"IMAP search error: {decode_imap_response(data) or status}")

        uids = parse_uid_search_data(data)
        if not uids:
            logger.info("No new messages.")
            return []
        self.state = STATE_FETCHING
        return uids

    def fetch(self, message_id: str) -> RawMessage:
        imap = self.require_connection()
        try:
            # BODY.PEEK keeps the message unseen until acknowledge() flags it.
            status, data = imap.uid("FETCH", message_id, "(BODY.PEEK[])")
        except (imaplib.IMAP4.abort, OSError) as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"IMAP connection lost while fetching UID {message_id}: {error}") from error
        except imaplib.IMAP4.error as error:
            raise MessageFetchError(message_id, f"fetch error: {error}") from error
        if status != "OK" or data is None:
            raise MessageFetchError(message_id, f"fetch error: {decode_imap_response(data) or status}")

        raw = parse_fetch_message_bytes(data)
        if raw is None:
            raise MessageFetchError(message_id, "fetch returned no message body")
        return raw_message_from_bytes(self.protocol, message_id, raw)

    def acknowledge(self, message_id: str) -> None:
        imap = self.require_connection()
        try:
            status, data = imap.uid("STORE", message_id, "+FLAGS", r"(\Seen)")
        except (imaplib.IMAP4.abort, OSError) as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"IMAP connection lost while flagging UID {message_id}: {error}") from error
        except imaplib.IMAP4.error as error:
            raise MessageAcknowledgeError(message_id, f"could not mark as read: {error}") from error
        if status != "OK":
            detail = decode_imap_response(data) or status
            raise MessageAcknowledgeError(message_id, f"could not mark as read: {detail}")
        logger.info("Marked email UID %s as read", message_id)

    def close(self) -> None:
        if self.imap is None:
            return
        imap, self.imap = self.imap, None
        errored = self.state == STATE_ERRORED
        if not errored:
            self.state = STATE_CLOSING
        try:
            imap.logout()
        except (imaplib.IMAP4.error, OSError) as error:
            logger.warning("IMAP logout failed: %s", error)
        else:
            logger.info("IMAP connection ended.")
        if not errored:
            self.state = STATE_ENDED

    def require_connection(self) -> imaplib.IMAP4:
        if self.imap is None:
            raise ProtocolError("IMAP adapter is not connected.")
        return self.imap


class Pop3Adapter(MailboxAdapter):
    protocol = PROTOCOL_POP3

    def __init__(
        self,
        settings: Pop3Settings,
        ssl_context: ssl.SSLContext,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        pop3_factory: Callable[..., poplib.POP3] = poplib.POP3_SSL,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.ssl_context = ssl_context
        self.timeout_seconds = timeout_seconds
        self.pop3_factory = pop3_factory
        self.pop3: poplib.POP3 | None = None

    def connect(self) -> None:
        host, port = self.settings.host, self.settings.port
        logger.info("Connecting to POP3 server %s:%s", host, port)
        try:
            self.pop3 = self.pop3_factory(
                host,
                port,
                timeout=self.timeout_seconds,
                context=self.ssl_context,
            )
        except OSError as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"POP3 connection error for {host}:{port}: {error}") from error
        self.state = STATE_CONNECTED
        logger.info("Connected to POP3 server.")

        try:
            self.pop3.user(self.settings.user)
            self.pop3.pass_(self.settings.password)
        except (poplib.error_proto, OSError) as error:
            self.state = STATE_ERRORED
            logger.error("POP3 login failed.")
            # Login failure ends the session straight away.
            self.close()
            raise MailboxConnectionError(f"POP3 login failed for {self.settings.user}: {error}") from error
        self.state = STATE_LOGGED_IN
        logger.info("POP3 login successful.")

    def list_message_ids(self) -> list[str]:
        pop3 = self.require_connection()
        try:
            message_count, _mailbox_size = pop3.stat()
        except (poplib.error_proto, OSError) as error:
            self.state = STATE_ERRORED
            raise ProtocolError(f"POP3 STAT failed: {error}") from error
        self.state = STATE_STAT_KNOWN
        logger.info("Mailbox has %s messages.", message_count)
        if message_count == 0:
            logger.info("No new messages.")
            return []
        return [str(index) for index in range(1, message_count + 1)]

    def fetch(self, message_id: str) -> RawMessage:
        pop3 = self.require_connection()
        self.state = STATE_RETRIEVING
        try:
            _response, lines, _octets = pop3.retr(int(message_id))
        except poplib.error_proto as error:
            logger.error("Failed to retrieve message %s", message_id)
            raise MessageFetchError(message_id, f"RETR failed: {error}") from error
        except OSError as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"POP3 connection lost while retrieving message {message_id}: {error}") from error
        raw = b"\r\n".join(lines) + b"\r\n"
        return raw_message_from_bytes(self.protocol, message_id, raw)

    def acknowledge(self, message_id: str) -> None:
        pop3 = self.require_connection()
        self.state = STATE_DELETING
        try:
            pop3.dele(int(message_id))
        except poplib.error_proto as error:
            logger.error("Failed to delete message %s", message_id)
            raise MessageAcknowledgeError(message_id, f"DELE failed: {error}") from error
        except OSError as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"POP3 connection lost while deleting message {message_id}: {error}") from error
        logger.info("Message %s marked as deleted.", message_id)

    def close(self) -> None:
        if self.pop3 is None:
            return
        pop3, self.pop3 = self.pop3, None
        errored = self.state == STATE_ERRORED
        if not errored:
            self.state = STATE_QUITTING
        try:
            pop3.quit()
        except (poplib.error_proto, OSError) as error:
            logger.error("Error while ending POP3 session: %s", error)
        else:
            logger.info("POP3 session ended.")
        if not errored:
            self.state = STATE_ENDED

    def require_connection(self) -> poplib.POP3:
        if self.pop3 is None:
            raise ProtocolError("POP3 adapter is not connected.")
        return self.pop3


def looks_like_compact_token(token: object) -> bool:
    # JWS compact tokens have three parts, JWE compact tokens five.
    if not isinstance(token, str):
        return False
    parts = token.split(".")
    return len(parts) in (3, 5) and bool(parts[0]) and bool(parts[1])


class GraphAdapter(MailboxAdapter):
    protocol = PROTOCOL_OAUTH

    def __init__(
        self,
        settings: OAuthSettings,
        tls_verify: bool = True,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        session: requests.Session | None = None,
        client_factory: Callable[..., msal.ConfidentialClientApplication] = msal.ConfidentialClientApplication,
    ) -> None:
        super().__init__()
        self.settings = settings
        self.tls_verify = tls_verify
        self.timeout_seconds = timeout_seconds
        self.client_factory = client_factory
        if session is None:
            session = requests.Session()
            session.verify = tls_verify
        self.session = session
        self.access_token: str | None = None
        self.messages_by_id: dict[str, object] = {}

    def connect(self) -> None:
        if not self.settings.user.strip():
            self.state = STATE_ERRORED
            raise ConfigurationError(f"{ENV_OAUTH_USER} is not set!")
        self.state = STATE_CONNECTING
        self.access_token = self.acquire_access_token()
        self.state = STATE_READY

    def acquire_access_token(self) -> str:
        authority = GRAPH_AUTHORITY_TEMPLATE.format(tenant=self.settings.tenant_id)
        try:
            client = self.client_factory(
                self.settings.client_id,
                authority=authority,
                client_credential=self.settings.client_secret,
                verify=self.tls_verify,
                timeout=self.timeout_seconds,
            )
            auth_response = client.acquire_token_for_client(scopes=[GRAPH_SCOPE])
        except (requests.RequestException, ValueError) as error:
            self.state = STATE_ERRORED
            raise MailboxConnectionError(f"Error retrieving access token: {error}") from error

        if not isinstance(auth_response, dict) or not auth_response.get("access_token"):
            self.state = STATE_ERRORED
            detail = "no access_token in response"
            if isinstance(auth_response, dict):
                detail = auth_response.get("error_description") or auth_response.get("error") or detail
            raise MailboxConnectionError(f"Error retrieving access token: {detail}")

        token = auth_response["access_token"]
        if not looks_like_compact_token(token):
            self.state = STATE_ERRORED
            raise MailboxConnectionError("Error retrieving access token: invalid token format.")
        logger.debug("Access token acquired for tenant %s.", self.settings.tenant_id)
        return token

    def list_message_ids(self) -> list[str]:
        if not self.access_token:
            raise ProtocolError("Graph adapter has no access token; call connect() first.")
        self.state = STATE_FETCHING
        url = GRAPH_MESSAGES_URL_TEMPLATE.format(principal=quote(self.settings.user, safe=""))
        try:
            response = self.session.get(
                url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout_seconds,
            )
        except requests.RequestException as error:
            self.state = STATE_ERRORED
            raise ProtocolError(f"Error connecting to mailbox: {error}") from error
        if response.status_code >= 400:
            self.state = STATE_ERRORED
            raise ProtocolError(
                f"Error connecting to mailbox: HTTP {response.status_code}: {response.text[:400]}"
            )
        try:
            payload = response.json()
        except ValueError as error:
            self.state = STATE_ERRORED
            raise ProtocolError(f"Mailbox response is not valid JSON: {error}") from error

        entries = payload.get("value") if isinstance(payload, dict) else None
        if not isinstance(entries, list) or not entries:
            logger.info("No emails found or accessible.")
            return []

        self.messages_by_id = {}
        for position, entry in enumerate(entries):
            entry_id = entry.get("id") if isinstance(entry, dict) else None
            message_id = str(entry_id) if entry_id else f"#{position}"
            if message_id in self.messages_by_id:
                message_id = f"{message_id}#{position}"
            self.messages_by_id[message_id] = entry
        return list(self.messages_by_id)

    def fetch(self, message_id: str) -> RawMessage:
        if message_id not in self.messages_by_id:
            raise MessageFetchError(message_id, "message was not part of the listed response")
        entry = self.messages_by_id[message_id]
        if not isinstance(entry, dict):
            raise MessageParseError(message_id, "message entry is not a JSON object")

        sender_section = entry.get("from") or {}
        address_section = sender_section.get("emailAddress") if isinstance(sender_section, dict) else None
        address = address_section.get("address") if isinstance(address_section, dict) else None
        body_section = entry.get("body") or {}
        if not isinstance(body_section, dict):
            raise MessageParseError(message_id, "message body is not a JSON object")
        content = body_section.get("content") or ""
        if not isinstance(content, str):
            raise MessageParseError(message_id, "message body content is not a string")
        content_type = str(body_section.get("contentType") or "html").lower()
        received_at = entry.get("receivedDateTime")

        return RawMessage(
            protocol=self.protocol,
            message_id=message_id,
            sender=str(address or "").strip().lower(),
            subject=str(entry.get("subject") or ""),
            received_at=str(received_at) if received_at else None,
            body=content,
            body_is_html=content_type != "text",
        )

    def acknowledge(self, message_id: str) -> None:
        # Graph messages are listed, never flagged or removed.
        return None

    def close(self) -> None:
        self.access_token = None
        self.messages_by_id = {}
        self.session.close()
        if self.state != STATE_ERRORED:
            self.state = STATE_ENDED


def create_adapter(config: MailboxConfig) -> MailboxAdapter:
    if not config.tls_verify:
        logger.warning(
            "TLS certificate validation is DISABLED (%s). "
            "Connections to the mail server can be intercepted.",
            ENV_TLS_INSECURE,
        )

    if config.protocol == PROTOCOL_IMAP:
        if config.imap is None:
            raise ConfigurationError("IMAP is enabled but no IMAP settings were provided.")
        return ImapAdapter(config.imap, build_ssl_context(config.tls_verify), config.timeout_seconds)
    if config.protocol == PROTOCOL_POP3:
        if config.pop3 is None:
            raise ConfigurationError("POP3 is enabled but no POP3 settings were provided.")
        return Pop3Adapter(config.pop3, build_ssl_context(config.tls_verify), config.timeout_seconds)
    if config.protocol == PROTOCOL_OAUTH:
        if config.oauth is None:
            raise ConfigurationError("OAuth2 is enabled but no OAuth settings were provided.")
        return GraphAdapter(config.oauth, config.tls_verify, config.timeout_seconds)
    raise ConfigurationError(f"Unsupported protocol {config.protocol!r}.")


def process_raw_message(raw: RawMessage) -> ParsedMessage:
    try:
        text = extract_text(raw.body) if raw.body_is_html else raw.body.strip()
        fields = parse_records(text)
    except (ParserRejectedMarkup, TypeError, ValueError) as error:
        raise MessageParseError(raw.message_id, f"could not extract content: {error}") from error
    return ParsedMessage(
        protocol=raw.protocol,
        message_id=raw.message_id,
        sender=raw.sender,
        subject=raw.subject,
        received_at=raw.received_at,
        text=text,
        fields=fields,
    )


def record_failure(result: RetrievalResult, stage: str, error: MessageError) -> None:
    logger.warning("Skipping %s (%s stage): %s", error.message_id, stage, error.detail)
    result.failures.append(
        MessageFailure(message_id=error.message_id, stage=stage, detail=error.detail)
    )


def handle_message(
    adapter: MailboxAdapter,
    message_id: str,
    dry_run: bool,
    result: RetrievalResult,
    on_message: Callable[[ParsedMessage], None] | None,
) -> None:
    try:
        parsed = process_raw_message(adapter.fetch(message_id))
    except MessageFetchError as error:
        record_failure(result, STAGE_FETCH, error)
        return
    except MessageParseError as error:
        # The message was retrieved, so it is still acknowledged below.
        record_failure(result, STAGE_PARSE, error)
    else:
        result.messages.append(parsed)
        if on_message is not None:
            try:
                on_message(parsed)
            except Exception as error:
                # Left unacknowledged so the next run delivers it again.
                record_failure(
                    result,
                    STAGE_EMIT,
                    MessageEmitError(message_id, f"could not emit result: {error!r}"),
                )
                return

    if dry_run:
        logger.info("Dry run: leaving message %s unacknowledged.", message_id)
        return
    try:
        adapter.acknowledge(message_id)
    except MessageAcknowledgeError as error:
        record_failure(result, STAGE_ACKNOWLEDGE, error)
        return
    result.acknowledged_count += 1


def run_retrieval(
    config: MailboxConfig,
    adapter_factory: Callable[[MailboxConfig], MailboxAdapter] = create_adapter,
    on_message: Callable[[ParsedMessage], None] | None = None,
    clock: Callable[[], float] = time.monotonic,
) -> RetrievalResult:
    result = RetrievalResult(protocol=config.protocol)
    label = PROTOCOL_LABELS.get(config.protocol, config.protocol)
    logger.info("Using %s connection...", label)
    deadline = clock() + config.run_timeout_seconds

    try:
        adapter = adapter_factory(config)
        with closing(adapter):
            adapter.connect()
            message_ids = adapter.list_message_ids()
            logger.info("Found %d message(s) to process.", len(message_ids))
            for message_id in message_ids:
                if clock() > deadline:
                    raise RetrievalTimeoutError(
                        f"{label} run timed out after {config.run_timeout_seconds:g}s; "
                        f"{len(result.messages)} message(s) processed."
                    )
                handle_message(adapter, message_id, config.dry_run, result, on_message)
            logger.info("Done fetching all messages.")
    except MailboxError as error:
        result.error = str(error)
        logger.error("Error connecting to the mailbox: %s", error)
    except OSError as error:
        result.error = f"network error: {error}"
        logger.error("Error connecting to the mailbox: %s", error)
    return result


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Poll one mailbox (POP3, IMAP or Microsoft Graph via OAuth2) selected by "
            f"{ENV_USE_POP3}/{ENV_USE_IMAP}/{ENV_USE_OAUTH} and parse each message body "
            'into "key: value" records.'
        )
    )
    parser.add_argument(
        "--env-file",
        default=DEFAULT_ENV_FILE,
        help=(
            f"Optional dotenv file to load before reading configuration (default: {DEFAULT_ENV_FILE}). "
            "Variables already set in the environment take precedence."
        ),
    )
    parser.add_argument(
        "--json-output",
        default="",
        help="Optional path to write parsed messages and failures as JSON.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Fetch and parse without marking messages read (IMAP) or deleting them (POP3).",
    )
    parser.add_argument(
        "--insecure-skip-tls-verify",
        action="store_true",
        help=(
            "Disable TLS certificate validation for this run. Unsafe; "
            f"equivalent to {ENV_TLS_INSECURE}=true."
        ),
    )
    parser.add_argument(
        "--timeout",
        default=None,
        type=float,
        help=f"Network timeout in seconds (default: {ENV_TIMEOUT_SECONDS} or {DEFAULT_TIMEOUT_SECONDS:g}).",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging.",
    )
    return parser.parse_args(argv)


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def apply_cli_overrides(config: MailboxConfig, args: argparse.Namespace) -> MailboxConfig:
    timeout_seconds = config.timeout_seconds
    if args.timeout is not None:
        if args.timeout <= 0:
            raise ConfigurationError("--timeout must be > 0.")
        timeout_seconds = args.timeout
    return replace(
        config,
        dry_run=config.dry_run or args.dry_run,
        tls_verify=config.tls_verify and not args.insecure_skip_tls_verify,
        timeout_seconds=timeout_seconds,
    )


def print_message(message: ParsedMessage) -> None:
    print("=============================")
    print(f"From: {message.sender}")
    print(f"Subject: {message.subject}")
    if message.received_at:
        print(f"Received Date: {message.received_at}")
    if message.fields:
        print("Parsed Data:")
        for key, value in message.fields.items():
            print(f"  {key}: {value}")
    else:
        print("Parsed Data: (none)")


def print_summary(result: RetrievalResult) -> None:
    label = PROTOCOL_LABELS.get(result.protocol or "", result.protocol or "none")
    print()
    print(
        f"{label}: parsed {len(result.messages)} message(s), "
        f"acknowledged {result.acknowledged_count}, "
        f"{len(result.failures)} failure(s)."
    )
    for failure in result.failures:
        print(f"  {failure.stage} failed for {failure.message_id}: {failure.detail}")


def write_json_output(path: Path, result: RetrievalResult) -> None:
    payload = {
        "protocol": result.protocol,
        "error": result.error,
        "acknowledged_count": result.acknowledged_count,
        "messages": [asdict(message) for message in result.messages],
        "failures": [asdict(failure) for failure in result.failures],
    }
    path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    configure_logging(args.verbose)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path, override=False)

    try:
        config = apply_cli_overrides(load_mailbox_config(), args)
    except ConfigurationError as error:
        print(error, file=sys.stderr)
        return 2

    result = run_retrieval(config, on_message=print_message)
    print_summary(result)

    if args.json_output:
        output_path = Path(args.json_output)
        try:
            write_json_output(output_path, result)
            print(f"Wrote JSON output to {output_path}")
        except OSError as error:
            print(f"Could not write JSON output at {output_path}: {error}", file=sys.stderr)
            return 1

    if result.error:
        print(f"Mailbox run failed: {result.error}", file=sys.stderr)
        return 1
    if result.failures:
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
