"""Source loaders that turn raw sales material into descriptive text units.

Handles three compiler inputs plus an optional operational log:

- ``marketing_book.txt``: free text, packed into paragraph chunks
- ``chats.json``: transcript turns, paired into question/answer units
- ``price_sheet.csv``: catalog rows, rendered into one sentence block each
- ``operations_log.jsonl``: operational events, one unit per line
"""

import csv
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable

from christy.knowledge.models import SourceKind

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 800  # characters

MARKETING_FILE = "marketing_book.txt"
TRANSCRIPT_FILE = "chats.json"
CATALOG_FILE = "price_sheet.csv"
OPERATIONS_LOG_FILE = "operations_log.jsonl"

USER_ROLES = frozenset({"user", "customer"})
AGENT_ROLES = frozenset({"agent", "assistant"})

PRICE_ON_REQUEST = "Price on request"
STOCK_ON_REQUEST = "stock on request"

BUNDLED_SERVICE_CATEGORIES = frozenset({"hosting", "bundled_service"})

# Clarifying sentences keep the chat model from conflating adjacent product types
CATEGORY_CLARIFICATIONS = {
    "transformer": "This is a power transformer for mining infrastructure, not a miner.",
    "container": "This is a mining container used to house and cool miners.",
    "immersion_system": "This is an immersion cooling system for miners, not a miner itself.",
    "cables": "These are power cables for connecting miners, PDUs, or transformers.",
    "pdu_fan": "These are PDUs and/or fans that support mining deployments.",
    "pdu": "These are PDUs and/or fans that support mining deployments.",
    "fan": "These are PDUs and/or fans that support mining deployments.",
    "parts": "These are spare parts / replacement components.",
    "spare_parts": "These are spare parts / replacement components.",
    "spares": "These are spare parts / replacement components.",
}

_PARAGRAPH_SPLIT_RE = re.compile(r"\n\s*\n")


@dataclass
class TextUnit:
    """A normalized unit of text waiting to be embedded."""

    id: str
    text: str
    source: SourceKind
    metadata: dict[str, Any] = field(default_factory=dict)


def chunk_text(text: str, max_chars: int = DEFAULT_CHUNK_SIZE) -> list[str]:
    """Greedily pack paragraphs into chunks of at most ``max_chars``.

    A paragraph is never split; one longer than ``max_chars`` becomes an
    oversized chunk of its own.
    """
    paragraphs = _PARAGRAPH_SPLIT_RE.split(text or "")
    chunks: list[str] = []
    current = ""

    for para in paragraphs:
        candidate = f"{current}\n\n{para}" if current else para
        if len(candidate) > max_chars:
            if current.strip():
                chunks.append(current.strip())
            current = para
        else:
            current = candidate

    if current.strip():
        chunks.append(current.strip())
    return chunks


def load_marketing_units(path: Path, max_chars: int = DEFAULT_CHUNK_SIZE) -> list[TextUnit]:
    raw = path.read_text(encoding="utf-8")
    if not raw.strip():
        return []

    return [
        TextUnit(
            id=f"{SourceKind.MARKETING_DOCUMENT.value}:{i}",
            text=chunk,
            source=SourceKind.MARKETING_DOCUMENT,
            metadata={"section": i},
        )
        for i, chunk in enumerate(chunk_text(raw, max_chars))
    ]


def pair_transcript(turns: list[dict[str, Any]]) -> list[TextUnit]:
    """Merge each user turn with the agent reply that immediately follows it.

    Turns without a matching partner become standalone units.
    """
    units: list[TextUnit] = []
    i = 0
    while i < len(turns):
        turn = turns[i]
        role = str(turn.get("role", "")).lower()
        following = turns[i + 1] if i + 1 < len(turns) else None
        following_role = str(following.get("role", "")).lower() if following else ""

        if role in USER_ROLES and following is not None and following_role in AGENT_ROLES:
            text = f"User: {turn.get('content', '')}\nAgent: {following.get('content', '')}"
            metadata = {
                "type": "qa_pair",
                "user_timestamp": turn.get("timestamp"),
                "agent_timestamp": following.get("timestamp"),
            }
            i += 2
        else:
            text = f"{role.upper() or 'UNKNOWN'}: {turn.get('content', '')}"
            metadata = {"type": "single_message", "timestamp": turn.get("timestamp")}
            i += 1

        units.append(
            TextUnit(
                id=f"{SourceKind.TRANSCRIPT.value}:{len(units)}",
                text=text,
                source=SourceKind.TRANSCRIPT,
                metadata=metadata,
            )
        )
    return units


def load_transcript_units(path: Path) -> list[TextUnit]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)

    if isinstance(data, dict):
        data = data.get("messages", [])
    if not isinstance(data, list):
        raise ValueError(f"Transcript file {path} must contain a list of turns")

    turns = [t for t in data if isinstance(t, dict)]
    return pair_transcript(turns)


def _field(row: dict[str, Any], name: str) -> str:
    value = row.get(name)
    return str(value).strip() if value is not None else ""


def _category_key(category: str) -> str:
    return re.sub(r"[\s\-]+", "_", category.strip().lower())


def describe_catalog_row(row: dict[str, Any]) -> str:
    """Render a catalog row into one deterministic description.

    Missing price and stock render as explicit "on request" phrases.
    """
    category = _field(row, "category") or "product"
    model = _field(row, "model_name")
    condition = "used" if _field(row, "condition").lower() == "used" else "new"

    hashrate = _field(row, "hashrate_ths")
    efficiency = _field(row, "efficiency_j_th")
    perf = ", ".join(
        part
        for part in (
            f"Hashrate: {hashrate} TH/s" if hashrate else "",
            f"Efficiency: {efficiency} J/TH" if efficiency else "",
        )
        if part
    )

    price_value = _field(row, "price_usd")
    price = f"${price_value}" if price_value else PRICE_ON_REQUEST
    stock_value = _field(row, "stock")
    stock = f"{stock_value} in stock" if stock_value else STOCK_ON_REQUEST

    key = _category_key(category)
    if key in BUNDLED_SERVICE_CATEGORIES:
        extra = (
            f"{category} is a bundled service that applies ONLY to miners; it does not apply to "
            "transformers, containers, immersion systems, cables, PDUs/fans or spare parts, "
            "which are separate line items."
        )
    else:
        extra = CATEGORY_CLARIFICATIONS.get(key, "")

    doa_terms = _field(row, "doa_terms")
    notes = _field(row, "notes")

    parts = [
        f"Category: {category}",
        f"Model: {model}",
        f"Condition: {condition}",
        perf,
        f"Price: {price}",
        f"Availability: {stock}.",
        extra,
        f"DOA / warranty: {doa_terms}" if doa_terms else "",
        f"Notes: {notes}" if notes else "",
    ]
    return " ".join(part for part in parts if part)


def load_catalog_units(path: Path) -> list[TextUnit]:
    with open(path, encoding="utf-8", newline="") as f:
        reader = csv.DictReader(f)
        rows = [
            {(k or "").strip(): (v or "").strip() for k, v in row.items() if k is not None}
            for row in reader
        ]

    rows = [row for row in rows if any(row.values())]
    rows = [row for row in rows if row.get("product_id") or row.get("model_name")]

    units: list[TextUnit] = []
    seen: dict[str, int] = {}
    for i, row in enumerate(rows):
        base_id = f"{SourceKind.CATALOG_ROW.value}:{row.get('product_id') or i}"
        seen[base_id] = seen.get(base_id, 0) + 1
        entry_id = base_id if seen[base_id] == 1 else f"{base_id}#{seen[base_id]}"
        if seen[base_id] > 1:
            logger.warning(f"Duplicate catalog id {base_id}; stored as {entry_id}")

        units.append(
            TextUnit(
                id=entry_id,
                text=describe_catalog_row(row),
                source=SourceKind.CATALOG_ROW,
                metadata=row,
            )
        )
    return units


def describe_operational_event(record: dict[str, Any]) -> str:
    event = str(record.get("event", "event"))
    data = record.get("data")
    details = json.dumps(data, ensure_ascii=False, sort_keys=True) if data is not None else ""
    return f"Event: {event}. Details: {details}" if details else f"Event: {event}."


def load_operational_log_units(path: Path) -> list[TextUnit]:
    units: list[TextUnit] = []
    with open(path, encoding="utf-8") as f:
        for line_no, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(f"Skipping malformed log line {line_no} in {path.name}")
                continue
            if not isinstance(record, dict):
                continue

            units.append(
                TextUnit(
                    id=f"{SourceKind.OPERATIONAL_LOG.value}:{len(units)}",
                    text=describe_operational_event(record),
                    source=SourceKind.OPERATIONAL_LOG,
                    metadata={
                        "event": str(record.get("event", "")),
                        "timestamp": record.get("timestamp"),
                    },
                )
            )
    return units


def collect_units(
    data_dir: Path,
    max_chars: int = DEFAULT_CHUNK_SIZE,
) -> tuple[list[TextUnit], list[str]]:
    """Load every available source under ``data_dir``.

    A missing input is skipped with a warning, never an error.

    Returns:
        Tuple of (all units in source order, names of skipped inputs).
    """
    loaders: Iterable[tuple[str, Any]] = (
        (MARKETING_FILE, lambda p: load_marketing_units(p, max_chars)),
        (TRANSCRIPT_FILE, load_transcript_units),
        (CATALOG_FILE, load_catalog_units),
        (OPERATIONS_LOG_FILE, load_operational_log_units),
    )

    units: list[TextUnit] = []
    skipped: list[str] = []
    for filename, load in loaders:
        path = data_dir / filename
        if not path.exists():
            logger.warning(f"No {filename} found in {data_dir} - skipping.")
            skipped.append(filename)
            continue

        loaded = load(path)
        logger.info(f"Loaded {len(loaded)} units from {filename}")
        units.extend(loaded)

    return units, skipped
