# File: src/ssr/evaluation/labeling.py
"""
Labeling spreadsheets ↔ ground truth JSON.

Flow:
  1. export_chunks_to_csv       retrieved chunks per stakeholder → CSV with an
                                empty relevance_score column
  2. a reviewer fills relevance_score in Excel (0 none, 1 background,
                                2 important, 3 essential)
  3. convert_labeled_csv_to_ground_truth
                                → GroundTruth JSON; only scores ≥ 2 count as
                                relevant

A second "wide" format labels every chunk of a namespace at once, one
relevance_<stakeholder> column per stakeholder, optionally pre-filled from a
file-priority sheet (◎ 3, ○ 2, △ 1).

Files are written as UTF-8 with BOM and CRLF line endings so Excel opens
them directly with Japanese text intact. Readers accept comma or tab
delimiters (Excel "Save as" often produces TSV) and strip the BOM.
"""

from __future__ import annotations

import csv
import io
import json
import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional, Sequence

from pydantic import ValidationError

from ssr.contracts.schemas import (
    ChunkForLabeling,
    GroundTruth,
    GroundTruthEntry,
    RelevantChunk,
    RetrievedChunk,
)
from ssr.errors import GroundTruthError

logger = logging.getLogger(__name__)

GROUND_TRUTH_VERSION = "1.0"
MIN_RELEVANT_SCORE = 2
MAX_RELEVANCE_SCORE = 3
RELEVANCE_PREFIX = "relevance_"

LABELING_HEADERS = (
    "query_id",
    "query",
    "stakeholder_id",
    "chunk_id",
    "file_name",
    "chunk_index",
    "rank",
    "score",
    "content_preview",
    "relevance_score",
)

# Column titles in the file-priority sheet, by stakeholder id
STAKEHOLDER_COLUMNS: Mapping[str, str] = {
    "cxo": "CxO",
    "technical-fellows": "Tech Fellows",
    "architect": "Architect",
    "product": "Product",
    "business": "Business",
    "r-and-d": "R&D",
}
PRIORITY_FILE_COLUMN = "ファイル名"

_PRIORITY_SYMBOLS = {"◎": 3, "○": 2, "△": 1}
_DOC_EXTENSION = re.compile(r"\.(pdf|md|txt|docx)$", re.IGNORECASE)


# ── Helpers ───────────────────────────────────────────────────────────────────

def priority_symbol_to_score(symbol: str) -> int:
    return _PRIORITY_SYMBOLS.get((symbol or "").strip(), 0)


def normalize_file_name(file_name: str) -> str:
    return _DOC_EXTENSION.sub("", file_name).lower()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _write_excel_csv(path: Path, headers: Sequence[str], rows: Iterable[Sequence[Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8-sig", newline="") as f:
        writer = csv.writer(f, lineterminator="\r\n")
        writer.writerow(headers)
        writer.writerows(rows)


def _read_table(path: Path) -> list[dict[str, str]]:
    """Rows as dicts; delimiter is tab if the header has more tabs than commas."""
    text = path.read_text(encoding="utf-8-sig").strip()
    if not text:
        raise GroundTruthError(f"{path}: file is empty")
    header_line = text.splitlines()[0]
    delimiter = "\t" if header_line.count("\t") > header_line.count(",") else ","
    logger.info("Reading %s (delimiter=%s)", path, "tab" if delimiter == "\t" else "comma")

    rows = list(csv.DictReader(io.StringIO(text), delimiter=delimiter))
    if not rows:
        raise GroundTruthError(f"{path}: no data rows")
    return rows


def _parse_relevance(raw: Optional[str], where: str) -> Optional[int]:
    """None for blank or invalid cells (invalid ones are logged)."""
    if raw is None or not raw.strip():
        return None
    try:
        score = int(raw.strip())
    except ValueError:
        logger.warning("%s: invalid relevance score %r, skipped", where, raw)
        return None
    if not 0 <= score <= MAX_RELEVANCE_SCORE:
        logger.warning("%s: relevance score %d outside 0-3, skipped", where, score)
        return None
    return score


def _write_ground_truth(ground_truth: GroundTruth, output_path: Path) -> None:
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(
        json.dumps(ground_truth.model_dump(by_alias=True), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


# ── Per-query labeling CSV ────────────────────────────────────────────────────

def to_labeling_rows(
    query_id: str,
    query: str,
    stakeholder_id: str,
    retrieved: Sequence[RetrievedChunk],
) -> list[ChunkForLabeling]:
    rows = []
    for i, chunk in enumerate(retrieved):
        chunk_index = chunk.metadata.get("chunk_index", chunk.metadata.get("chunkIndex"))
        rows.append(ChunkForLabeling(
            query_id=query_id,
            query=query,
            stakeholder_id=stakeholder_id,
            chunk_id=chunk.chunk_id,
            file_name=chunk.file_name,
            chunk_index=int(chunk_index) if chunk_index is not None else i,
            rank=chunk.rank,
            score=chunk.score,
            content_preview=chunk.content,
        ))
    return rows


def export_chunks_to_csv(chunks: Sequence[ChunkForLabeling], output_path: Path) -> int:
    """Write the labeling CSV. Returns the number of rows written."""
    _write_excel_csv(
        Path(output_path),
        LABELING_HEADERS,
        (
            (
                c.query_id,
                c.query,
                c.stakeholder_id,
                c.chunk_id,
                c.file_name,
                c.chunk_index,
                c.rank,
                f"{c.score:.4f}",
                c.content_preview,
                "" if c.relevance_score is None else c.relevance_score,
            )
            for c in chunks
        ),
    )
    logger.info("Labeling CSV written: %s (%d chunks)", output_path, len(chunks))
    return len(chunks)


def convert_labeled_csv_to_ground_truth(
    csv_path: Path,
    output_path: Optional[Path] = None,
    description: str = "",
) -> GroundTruth:
    """
    Group labeled rows by query_id. Rows with a blank score, an invalid
    score, or a score below 2 are not relevant and are dropped.
    """
    csv_path = Path(csv_path)
    rows = _read_table(csv_path)
    missing = [h for h in ("query_id", "chunk_id", "relevance_score") if h not in rows[0]]
    if missing:
        raise GroundTruthError(f"{csv_path}: missing required columns: {', '.join(missing)}")

    entries: dict[str, GroundTruthEntry] = {}
    for line_no, row in enumerate(rows, 2):
        score = _parse_relevance(row.get("relevance_score"), f"line {line_no}")
        if score is None or score < MIN_RELEVANT_SCORE:
            continue

        query_id = row["query_id"]
        entry = entries.get(query_id)
        if entry is None:
            entry = GroundTruthEntry(
                query_id=query_id,
                query=row.get("query") or "",
                stakeholder_id=row.get("stakeholder_id") or "",
            )
            entries[query_id] = entry
        entry.relevant_chunks.append(RelevantChunk(
            chunk_id=row["chunk_id"],
            file_name=row.get("file_name") or "",
            relevance_score=score,
        ))

    ground_truth = GroundTruth(
        version=GROUND_TRUTH_VERSION,
        created_at=_now(),
        description=description or f"Converted from {csv_path}",
        entries=list(entries.values()),
    )
    if output_path is not None:
        _write_ground_truth(ground_truth, Path(output_path))
        logger.info(
            "Ground truth written: %s (%d queries, %d relevant chunks)",
            output_path, len(ground_truth.entries),
            sum(len(e.relevant_chunks) for e in ground_truth.entries),
        )
    return ground_truth


# ── Wide "all chunks" CSV ─────────────────────────────────────────────────────

def load_priority_mapping(path: Path) -> dict[str, dict[str, int]]:
    """
    File-priority sheet (exported as CSV) → {normalized file name: {stakeholder: score}}.
    Expects a ファイル名 column plus one column per STAKEHOLDER_COLUMNS title.
    """
    mapping: dict[str, dict[str, int]] = {}
    for row in _read_table(Path(path)):
        file_name = (row.get(PRIORITY_FILE_COLUMN) or "").strip()
        if not file_name:
            continue
        mapping[normalize_file_name(file_name)] = {
            sid: priority_symbol_to_score(row.get(column) or "")
            for sid, column in STAKEHOLDER_COLUMNS.items()
        }
    logger.info("Priority mapping loaded: %d files", len(mapping))
    return mapping


def get_priority_score(
    file_name: str,
    stakeholder_id: str,
    priority_mapping: Mapping[str, Mapping[str, int]],
) -> int:
    """Unlisted files and stakeholders default to 1 (background)."""
    scores = priority_mapping.get(normalize_file_name(file_name))
    if scores is None:
        logger.warning("File not in priority mapping: %s", file_name)
        return 1
    return scores.get(stakeholder_id, 1)


def export_all_chunks_to_csv(
    chunks: Sequence[Mapping[str, Any]],
    stakeholder_ids: Sequence[str],
    output_path: Path,
    priority_mapping: Optional[Mapping[str, Mapping[str, int]]] = None,
) -> int:
    """chunks carry chunk_id, file_name, chunk_index and text."""
    headers = ["chunk_id", "file_name", "chunk_index", "content_preview"]
    headers += [f"{RELEVANCE_PREFIX}{sid}" for sid in stakeholder_ids]

    def rows():
        for c in chunks:
            file_name = c.get("file_name", "")
            scores = [
                get_priority_score(file_name, sid, priority_mapping) if priority_mapping else ""
                for sid in stakeholder_ids
            ]
            yield [c["chunk_id"], file_name, c.get("chunk_index", 0), c.get("text", ""), *scores]

    _write_excel_csv(Path(output_path), headers, rows())
    logger.info(
        "All-chunks CSV written: %s (%d chunks, stakeholders=%s)",
        output_path, len(chunks), ",".join(stakeholder_ids),
    )
    return len(chunks)


def convert_all_chunks_csv_to_ground_truth(
    csv_path: Path,
    output_path: Optional[Path] = None,
    description: str = "",
    chunk_id_prefix: bool = False,
) -> GroundTruth:
    """
    One entry per relevance_<stakeholder> column (query_id "rrf_<stakeholder>").

    chunk_id_prefix: namespaces that store chunk ids as
    "<stakeholder>_<base id>" need the stakeholder prepended.
    """
    csv_path = Path(csv_path)
    rows = _read_table(csv_path)
    if "chunk_id" not in rows[0]:
        raise GroundTruthError(f"{csv_path}: chunk_id column not found")
    columns = [h for h in rows[0] if h.startswith(RELEVANCE_PREFIX)]
    if not columns:
        raise GroundTruthError(f"{csv_path}: no {RELEVANCE_PREFIX}* columns found")

    entries: dict[str, GroundTruthEntry] = {}
    for column in columns:
        sid = column[len(RELEVANCE_PREFIX):]
        entries[sid] = GroundTruthEntry(
            query_id=f"rrf_{sid}", query=f"[RRF] {sid}", stakeholder_id=sid,
        )

    for line_no, row in enumerate(rows, 2):
        for column in columns:
            sid = column[len(RELEVANCE_PREFIX):]
            score = _parse_relevance(row.get(column), f"line {line_no} ({sid})")
            if score is None or score < MIN_RELEVANT_SCORE:
                continue
            chunk_id = row["chunk_id"]
            entries[sid].relevant_chunks.append(RelevantChunk(
                chunk_id=f"{sid}_{chunk_id}" if chunk_id_prefix else chunk_id,
                file_name=row.get("file_name") or "",
                relevance_score=score,
            ))

    ground_truth = GroundTruth(
        version=GROUND_TRUTH_VERSION,
        created_at=_now(),
        description=description or f"Converted from {csv_path} (all chunks)",
        entries=list(entries.values()),
    )
    if output_path is not None:
        _write_ground_truth(ground_truth, Path(output_path))
    return ground_truth


# ── Ground truth files ────────────────────────────────────────────────────────

def validate_ground_truth(data: Any) -> list[str]:
    """Problems found in raw ground-truth JSON; empty means valid."""
    errors: list[str] = []
    if not isinstance(data, dict):
        return ["ground truth must be a JSON object"]
    if not data.get("version"):
        errors.append("version is not set")

    entries = data.get("entries")
    if not isinstance(entries, list):
        errors.append("entries is not a list")
        return errors

    for i, entry in enumerate(entries):
        if not isinstance(entry, dict):
            errors.append(f"entries[{i}]: not an object")
            continue
        if not entry.get("queryId", entry.get("query_id")):
            errors.append(f"entries[{i}]: queryId is not set")
        if not entry.get("query"):
            errors.append(f"entries[{i}]: query is not set")
        chunks = entry.get("relevantChunks", entry.get("relevant_chunks"))
        if not isinstance(chunks, list):
            errors.append(f"entries[{i}]: relevantChunks is not a list")
            continue
        for j, chunk in enumerate(chunks):
            where = f"entries[{i}].relevantChunks[{j}]"
            if not isinstance(chunk, dict):
                errors.append(f"{where}: not an object")
                continue
            if not chunk.get("chunkId", chunk.get("chunk_id")):
                errors.append(f"{where}: chunkId is not set")
            score = chunk.get("relevanceScore", chunk.get("relevance_score"))
            if isinstance(score, bool) or not isinstance(score, int) or not 0 <= score <= 3:
                errors.append(f"{where}: relevanceScore must be an integer 0-3")
    return errors


def load_ground_truth(path: Path) -> GroundTruth:
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8-sig"))
    except json.JSONDecodeError as e:
        raise GroundTruthError(f"{path}: invalid JSON: {e}") from e

    errors = validate_ground_truth(data)
    if errors:
        raise GroundTruthError(f"{path}: ground truth validation failed", errors)
    try:
        return GroundTruth.model_validate(data)
    except ValidationError as e:
        raise GroundTruthError(f"{path}: ground truth validation failed", [str(e)]) from e


def generate_ground_truth_template(output_path: Optional[Path] = None) -> GroundTruth:
    template = GroundTruth(
        version=GROUND_TRUTH_VERSION,
        created_at=_now(),
        description="Ground Truth Template",
        entries=[
            GroundTruthEntry(
                query_id="q1_example",
                query="サンプルクエリ",
                stakeholder_id="example-stakeholder",
                relevant_chunks=[
                    RelevantChunk(chunk_id="chunk_001", file_name="example.pdf", relevance_score=3),
                    RelevantChunk(chunk_id="chunk_002", file_name="example.pdf", relevance_score=2),
                ],
            ),
        ],
    )
    if output_path is not None:
        _write_ground_truth(template, Path(output_path))
        logger.info("Ground truth template written: %s", output_path)
    return template
