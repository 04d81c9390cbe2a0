from __future__ import annotations

import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .types import NEW_LISTING, UPDATE, MentionEvent, TokenStats, UserRef
from .utils import parse_iso

PILL_MARKER = "\U0001F48A"
NEW_MARKER = "\U0001F195"
PUMP_BASE_URL = "https://pump.fun/"

# Optional 🆕/🚀 prefix, the 💊 marker, then **[name](pump link) [stats] - ticker/chain**
# with an optional trailing [⬆︎](jump link).
TOKEN_MESSAGE_RE = re.compile(
    r"^(\U0001F195|\U0001F680)?\U0001F48A\s*\*\*\[(.*?)\]"
    r"\((https://pump\.fun/([a-zA-Z0-9]+))\)\s*\[(.*?)\]\s*-\s*(.*?)/(\w+)\*\*"
    r"(\s*\[\u2b06\ufe0e?\].*)?$"
)
STATS_RE = re.compile(r"(\d+(?:\.\d+)?[KMB]?)/(\d+(?:\.\d+)?[KMB]?)%")

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


def classify(content: Optional[str]) -> Optional[MentionEvent]:
    if not content or PILL_MARKER not in content:
        return None
    match = TOKEN_MESSAGE_RE.match(content.strip())
    if not match:
        return None
    type_marker, name, _link, address, raw_stats, ticker, chain, jump = match.groups()

    stats = None
    stats_match = STATS_RE.search(raw_stats or "")
    if stats_match:
        stats = TokenStats(market_cap=stats_match.group(1), percentage=stats_match.group(2))

    return MentionEvent(
        token_name=name.strip(),
        ticker=ticker.strip(),
        chain=chain.strip(),
        token_address=address,
        pump_link=f"{PUMP_BASE_URL}{address}",
        update_kind=NEW_LISTING if type_marker == NEW_MARKER else UPDATE,
        stats=stats,
        has_source_link=bool(jump),
    )


def _poster_from_message(message: Dict[str, Any]) -> Optional[UserRef]:
    mentions = message.get("mentions")
    author: Any = None
    if isinstance(mentions, list) and mentions:
        author = mentions[0]
    else:
        referenced = message.get("referenced_message")
        if isinstance(referenced, dict):
            author = referenced.get("author")
    if not isinstance(author, dict):
        return None
    user_id = author.get("id")
    return UserRef(
        username=author.get("username"),
        discord_id=str(user_id) if user_id is not None else None,
        timestamp=message.get("timestamp"),
    )


def _message_sort_key(event: MentionEvent) -> datetime:
    return parse_iso(event.message_timestamp) or _EPOCH


def events_from_messages(
    messages: Iterable[Dict[str, Any]], bot_username: str
) -> List[MentionEvent]:
    events: List[MentionEvent] = []
    for message in messages:
        if not isinstance(message, dict):
            continue
        author = message.get("author") or {}
        if author.get("username") != bot_username or not author.get("bot"):
            continue
        event = classify(message.get("content"))
        if event is None:
            continue
        poster = _poster_from_message(message)
        if poster is None or not poster.username or not poster.discord_id:
            continue
        if not (event.ticker and event.pump_link and event.token_address):
            continue
        events.append(
            replace(event, poster=poster, message_timestamp=message.get("timestamp"))
        )
    # Channel history arrives newest first; replay oldest first so updates append in order.
    return sorted(events, key=_message_sort_key)
