import functools
from collections.abc import Awaitable, Callable
from typing import Any

from errors import JMAPError
from jmap_client import JMAPClient

# Set by server.main() once the session is established
jmap: JMAPClient | None = None

SUMMARY_PROPERTIES = ["id", "threadId", "from", "subject", "receivedAt", "preview"]


def _client() -> JMAPClient:
    if jmap is None:
        raise JMAPError.session_not_initialized()
    return jmap


async def _call(method_calls: list[list]) -> list[dict[str, Any]]:
    """Run a batch and return each response's arguments, raising on method errors."""
    client = _client()
    body = await client.request(method_calls)
    results = []
    for entry in body["methodResponses"]:
        parsed = client.parse_method_response(entry)
        if not parsed.success:
            raise parsed.to_error()
        results.append(parsed.data)
    return results


def _account_id() -> str:
    return _client().get_session().account_id


def tool_errors(fn: Callable[..., Awaitable[str]]) -> Callable[..., Awaitable[str]]:
    """Return JMAPError text to the assistant instead of failing the tool call."""

    @functools.wraps(fn)
    async def wrapper(*args: Any, **kwargs: Any) -> str:
        try:
            return await fn(*args, **kwargs)
        except JMAPError as e:
            return f"Error ({e.type}): {e.message}\nFix: {e.fix}"

    return wrapper


def _sender(e: dict) -> str:
    if not e.get("from"):
        return "unknown"
    addr = e["from"][0]
    return f"{addr['name']} <{addr['email']}>" if addr.get("name") else addr["email"]


def _format_addrs(addrs: list[dict] | None) -> str:
    if not addrs:
        return "none"
    return ", ".join(
        f"{a['name']} <{a['email']}>" if a.get("name") else a["email"] for a in addrs
    )


def _body_text(e: dict, parts_key: str) -> str:
    values = e.get("bodyValues") or {}
    return "".join(
        values[part["partId"]].get("value", "")
        for part in e.get(parts_key) or []
        if part.get("partId") in values
    )


def _summary_lines(emails: list[dict]) -> list[str]:
    lines = []
    for e in emails:
        lines.append(f"\n**{e.get('subject') or '(no subject)'}**")
        lines.append(f"  From: {_sender(e)}")
        lines.append(f"  Date: {e['receivedAt'][:10]}")
        lines.append(f"  {(e.get('preview') or '')[:150]}")
        lines.append(f"  [id:{e['id']}] [thread:{e['threadId']}]")
    return lines


@tool_errors
async def list_mailboxes() -> str:
    """List all mailboxes with message counts."""
    (mailbox_get,) = await _call(
        [
            [
                "Mailbox/get",
                {
                    "accountId": _account_id(),
                    "properties": [
                        "name",
                        "parentId",
                        "role",
                        "totalEmails",
                        "unreadEmails",
                    ],
                },
                "0",
            ]
        ]
    )
    lines = []
    for mb in sorted(mailbox_get["list"], key=lambda m: m["name"]):
        unread = f" ({mb['unreadEmails']} unread)" if mb["unreadEmails"] else ""
        role = f" [{mb['role']}]" if mb.get("role") else ""
        lines.append(
            f"- {mb['name']}{role}: {mb['totalEmails']} emails{unread} [id:{mb['id']}]"
        )
    return "\n".join(lines) or "No mailboxes found."


@tool_errors
async def list_emails(mailbox_id: str, limit: int = 20, position: int = 0) -> str:
    """List emails in a mailbox, newest first.

    Args:
        mailbox_id: The mailbox ID (from list_mailboxes).
        limit: Number of emails to return (default 20, max 50).
        position: Offset for pagination (default 0).
    """
    limit = min(limit, 50)
    account_id = _account_id()
    query, get = await _call(
        [
            [
                "Email/query",
                {
                    "accountId": account_id,
                    "filter": {"inMailbox": mailbox_id},
                    "sort": [{"property": "receivedAt", "isAscending": False}],
                    "position": position,
                    "limit": limit,
                },
                "0",
            ],
            [
                "Email/get",
                {
                    "accountId": account_id,
                    "#ids": {"resultOf": "0", "name": "Email/query", "path": "/ids"},
                    "properties": SUMMARY_PROPERTIES,
                },
                "1",
            ],
        ]
    )
    emails = get["list"]
    header = (
        f"Showing {len(emails)} of {query.get('total', '?')} emails (offset {position}):"
    )
    return "\n".join([header, *_summary_lines(emails)])


@tool_errors
async def get_email(email_id: str) -> str:
    """Get the full content of an email by ID.

    Args:
        email_id: The email ID (from list_emails or search_emails).
    """
    (get,) = await _call(
        [
            [
                "Email/get",
                {
                    "accountId": _account_id(),
                    "ids": [email_id],
                    "properties": [
                        "id",
                        "threadId",
                        "from",
                        "to",
                        "cc",
                        "subject",
                        "receivedAt",
                        "bodyValues",
                        "textBody",
                        "htmlBody",
                        "attachments",
                    ],
                    "fetchTextBodyValues": True,
                    "fetchHTMLBodyValues": True,
                },
                "0",
            ]
        ]
    )
    if not get["list"]:
        return f"Email {email_id} not found."
    e = get["list"][0]

    # Prefer the text body, fall back to HTML
    body = _body_text(e, "textBody") or _body_text(e, "htmlBody")
    attachments = ""
    if e.get("attachments"):
        names = ", ".join(a.get("name") or "unnamed" for a in e["attachments"])
        attachments = f"\nAttachments: {names}"

    return (
        f"**{e.get('subject') or '(no subject)'}**\n"
        f"From: {_format_addrs(e.get('from'))}\n"
        f"To: {_format_addrs(e.get('to'))}\n"
        f"CC: {_format_addrs(e.get('cc'))}\n"
        f"Date: {e['receivedAt']}\n"
        f"{attachments}\n"
        f"---\n{body}"
    )


@tool_errors
async def search_emails(
    query: str | None = None,
    from_address: str | None = None,
    subject: str | None = None,
    after: str | None = None,
    before: str | None = None,
    has_attachment: bool | None = None,
    limit: int = 20,
) -> str:
    """Search emails by text, sender, subject, date range or attachments.

    Args:
        query: Full-text search across all fields.
        from_address: Filter by sender email address.
        subject: Filter by subject text.
        after: Only emails after this date (YYYY-MM-DD).
        before: Only emails before this date (YYYY-MM-DD).
        has_attachment: Filter emails with/without attachments.
        limit: Max results (default 20, max 50).
    """
    conditions: list[dict[str, Any]] = []
    if query:
        conditions.append({"text": query})
    if from_address:
        conditions.append({"from": from_address})
    if subject:
        conditions.append({"subject": subject})
    if after:
        conditions.append({"after": f"{after}T00:00:00Z"})
    if before:
        conditions.append({"before": f"{before}T23:59:59Z"})
    if has_attachment is not None:
        conditions.append({"hasAttachment": has_attachment})
    if not conditions:
        return "Please provide at least one search criterion."

    email_filter = (
        conditions[0]
        if len(conditions) == 1
        else {"operator": "AND", "conditions": conditions}
    )
    account_id = _account_id()
    result, get = await _call(
        [
            [
                "Email/query",
                {
                    "accountId": account_id,
                    "filter": email_filter,
                    "sort": [{"property": "receivedAt", "isAscending": False}],
                    "limit": min(limit, 50),
                },
                "0",
            ],
            [
                "Email/get",
                {
                    "accountId": account_id,
                    "#ids": {"resultOf": "0", "name": "Email/query", "path": "/ids"},
                    "properties": SUMMARY_PROPERTIES,
                },
                "1",
            ],
        ]
    )
    emails = get["list"]
    if not emails:
        return "No emails found matching your search."
    header = f"Found {result.get('total', '?')} results (showing {len(emails)}):"
    return "\n".join([header, *_summary_lines(emails)])


@tool_errors
async def get_thread(thread_id: str) -> str:
    """Get all emails in a conversation thread, oldest first.

    Args:
        thread_id: The thread ID (from list_emails or search_emails).
    """
    account_id = _account_id()
    threads, get = await _call(
        [
            ["Thread/get", {"accountId": account_id, "ids": [thread_id]}, "0"],
            [
                "Email/get",
                {
                    "accountId": account_id,
                    "#ids": {
                        "resultOf": "0",
                        "name": "Thread/get",
                        "path": "/list/*/emailIds",
                    },
                    "properties": [
                        "id",
                        "from",
                        "subject",
                        "receivedAt",
                        "bodyValues",
                        "textBody",
                        "preview",
                    ],
                    "fetchTextBodyValues": True,
                },
                "1",
            ],
        ]
    )
    if not threads["list"]:
        return f"Thread {thread_id} not found."

    emails = sorted(get["list"], key=lambda e: e["receivedAt"])
    subject = emails[0].get("subject") if emails else "unknown"
    lines = [f"Thread: {subject} ({len(emails)} messages)"]
    for e in emails:
        body = _body_text(e, "textBody") or e.get("preview", "")
        lines.append(f"\n--- {_sender(e)} ({e['receivedAt']}) ---")
        lines.append(body[:2000])
    return "\n".join(lines)
