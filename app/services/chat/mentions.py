"""
String helpers for `@name` mentions in chat messages.

Pure functions only; the chat session decides when to call them.
"""

import re
from dataclasses import dataclass

from app.models.domain.crm_domain import ContactSummary

# `@` followed by a non-@/non-newline run, ending at whitespace, another `@` or the end
MENTION_PATTERN = re.compile(r"@([^@\n]+?)(?=\s|$|@)")

PENDING_QUERY_PATTERN = re.compile(r"\w+")
TRAILING_MENTION_PATTERN = re.compile(r"(@[^\s]*\s*)$")


@dataclass(frozen=True)
class MentionSegment:
    """A run of message text, linked to a contact when it is a mention badge."""

    text: str
    contact: ContactSummary | None = None


def detect_mention_query(text: str) -> str | None:
    """
    Return the word being typed after the last `@`, or None.

    None covers: no `@` at all, nothing typed after it yet, a completed
    mention (word followed by whitespace), and anything that is not a single
    word.
    """
    index = text.rfind("@")
    if index == -1:
        return None

    trailing = text[index + 1 :]
    if PENDING_QUERY_PATTERN.fullmatch(trailing):
        return trailing
    return None


def extract_mentions(text: str) -> list[str]:
    """Mention names in order of appearance, trimmed, empties dropped."""
    names = (match.strip() for match in MENTION_PATTERN.findall(text))
    return [name for name in names if name]


def find_unmatched_mentions(text: str, contacts: list[ContactSummary]) -> list[str]:
    """Mention names that match no tagged contact's firstname or display name."""
    unmatched: list[str] = []
    for name in extract_mentions(text):
        if name in unmatched:
            continue
        if not any(contact.matches_name(name) for contact in contacts):
            unmatched.append(name)
    return unmatched


def append_mention(text: str, name: str) -> str:
    """Append `@name ` with exactly one separating space when needed."""
    separator = "" if not text or text[-1].isspace() else " "
    return f"{text}{separator}@{name} "


def replace_mention_query(text: str, query: str | None, name: str) -> str:
    """
    Replace the pending `@query` (its last occurrence) with `@name `.

    Falls back to replacing a trailing `@...` token, then to appending.
    """
    token = f"@{name} "

    if query:
        pending = f"@{query}"
        index = text.rfind(pending)
        if index != -1:
            rest = text[index + len(pending) :]
            return text[:index] + token + rest.lstrip(" ")

    if TRAILING_MENTION_PATTERN.search(text):
        return TRAILING_MENTION_PATTERN.sub(lambda _: token, text, count=1)

    return append_mention(text, name)


def sync_tagged_contacts(
    contacts: list[ContactSummary], mention_names: list[str]
) -> list[ContactSummary]:
    """Keep contacts still referenced by one of the reported mention names."""
    return [
        contact
        for contact in contacts
        if any(contact.matches_name(name) for name in mention_names)
    ]


def split_mentions(text: str, contacts: list[ContactSummary]) -> list[MentionSegment]:
    """
    Split text into plain and mention segments for badge rendering.

    Names are tried longest first so "@John Smith" wins over "@John".
    """
    by_name: dict[str, ContactSummary] = {}
    for contact in contacts:
        for name in (contact.display_name, contact.firstname):
            if name:
                by_name.setdefault(name.lower(), contact)

    if not by_name or not text:
        return [MentionSegment(text)] if text else []

    names = sorted(by_name, key=len, reverse=True)
    pattern = re.compile("|".join(f"@{re.escape(name)}" for name in names), re.IGNORECASE)

    segments: list[MentionSegment] = []
    position = 0
    for match in pattern.finditer(text):
        if match.start() > position:
            segments.append(MentionSegment(text[position : match.start()]))
        segments.append(MentionSegment(match.group(0), by_name[match.group(0)[1:].lower()]))
        position = match.end()

    if position < len(text):
        segments.append(MentionSegment(text[position:]))
    return segments
