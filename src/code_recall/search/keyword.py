"""Inverted keyword index over code chunks."""

import re
import threading
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field

import structlog

from code_recall.models import CodeChunk

log = structlog.get_logger()

# Pattern for extracting words from queries and code
WORD_PATTERN = re.compile(r"\w+")
# Boundary between a lowercase letter/digit and an uppercase letter
CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")

STOP_WORDS = frozenset(
    {"the", "and", "but", "for", "not", "are", "was", "with", "this", "that", "from", "into"}
)

MIN_TERM_LENGTH = 3

# A term found in the chunk name counts double
NAME_MATCH_WEIGHT = 2.0
# Extra weight per additional occurrence of a term, capped
TF_BOOST_PER_OCCURRENCE = 0.1
MAX_TF_BOOST = 0.5


def _keep(term: str) -> bool:
    return len(term) >= MIN_TERM_LENGTH and term not in STOP_WORDS


def tokenize(text: str) -> list[str]:
    """Split text into lowercase search terms.

    Identifiers are kept whole and also split on camelCase and snake_case
    boundaries, so ``getUserName`` yields ``getusername``, ``get``,
    ``user`` and ``name``.

    Returns:
        Terms in order of appearance, repeats included.
    """
    terms: list[str] = []
    for word in WORD_PATTERN.findall(text):
        lowered = word.lower()
        if _keep(lowered):
            terms.append(lowered)

        parts = [p for piece in word.split("_") for p in CAMEL_BOUNDARY.split(piece)]
        if len(parts) > 1:
            terms.extend(p.lower() for p in parts if _keep(p.lower()))
    return terms


def extract_query_terms(text: str) -> list[str]:
    """Distinct search terms of a query, in order of appearance."""
    return list(dict.fromkeys(tokenize(text)))


@dataclass(frozen=True)
class _Snapshot:
    """Immutable index state. Writers build a new one and swap it in."""

    postings: dict[str, frozenset[str]] = field(default_factory=dict)
    term_freqs: dict[str, Counter[str]] = field(default_factory=dict)
    name_terms: dict[str, frozenset[str]] = field(default_factory=dict)
    chunks: dict[str, CodeChunk] = field(default_factory=dict)
    files: dict[str, tuple[str, ...]] = field(default_factory=dict)


class KeywordIndex:
    """Term -> chunk ids lookup with overlap scoring.

    Readers always see a complete snapshot: build() and update_file()
    prepare the next state off to the side and publish it with a single
    attribute assignment. Writers are serialized among themselves.
    """

    def __init__(self) -> None:
        self._snapshot = _Snapshot()
        self._write_lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._snapshot.chunks)

    @property
    def term_count(self) -> int:
        return len(self._snapshot.postings)

    def build(self, chunks: Iterable[CodeChunk]) -> None:
        """Rebuild the whole index from chunks."""
        postings: dict[str, set[str]] = {}
        term_freqs: dict[str, Counter[str]] = {}
        name_terms: dict[str, frozenset[str]] = {}
        by_id: dict[str, CodeChunk] = {}
        files: dict[str, list[str]] = {}

        for chunk in chunks:
            by_id[chunk.id] = chunk

        for chunk in by_id.values():
            freqs = Counter(tokenize(f"{chunk.name} {chunk.content}"))
            term_freqs[chunk.id] = freqs
            name_terms[chunk.id] = frozenset(tokenize(chunk.name))
            files.setdefault(chunk.file_path, []).append(chunk.id)
            for term in freqs:
                postings.setdefault(term, set()).add(chunk.id)

        snapshot = _Snapshot(
            postings={term: frozenset(ids) for term, ids in postings.items()},
            term_freqs=term_freqs,
            name_terms=name_terms,
            chunks=by_id,
            files={path: tuple(ids) for path, ids in files.items()},
        )
        with self._write_lock:
            self._snapshot = snapshot

        log.info("keyword_index_built", chunks=len(by_id), terms=len(snapshot.postings))

    def update_file(self, file_path: str, chunks: Iterable[CodeChunk]) -> None:
        """Replace the chunks of one file. An empty iterable removes the file."""
        new_chunks = [c for c in chunks if c.file_path == file_path]

        with self._write_lock:
            current = self._snapshot
            postings = dict(current.postings)
            term_freqs = dict(current.term_freqs)
            name_terms = dict(current.name_terms)
            by_id = dict(current.chunks)
            files = dict(current.files)

            for chunk_id in files.pop(file_path, ()):
                for term in term_freqs.pop(chunk_id, ()):
                    remaining = postings[term] - {chunk_id}
                    if remaining:
                        postings[term] = remaining
                    else:
                        del postings[term]
                name_terms.pop(chunk_id, None)
                by_id.pop(chunk_id, None)

            ids: list[str] = []
            for chunk in new_chunks:
                if chunk.id not in ids:
                    ids.append(chunk.id)
                by_id[chunk.id] = chunk
                freqs = Counter(tokenize(f"{chunk.name} {chunk.content}"))
                term_freqs[chunk.id] = freqs
                name_terms[chunk.id] = frozenset(tokenize(chunk.name))
                for term in freqs:
                    postings[term] = postings.get(term, frozenset()) | {chunk.id}
            if ids:
                files[file_path] = tuple(ids)

            self._snapshot = _Snapshot(
                postings=postings,
                term_freqs=term_freqs,
                name_terms=name_terms,
                chunks=by_id,
                files=files,
            )

        log.debug("keyword_index_file_updated", file_path=file_path, chunks=len(ids))

    def search(self, text: str, limit: int | None = None) -> list[tuple[CodeChunk, float]]:
        """Score chunks sharing at least one term with the query.

        The score is the share of query terms a chunk contains, scaled by the
        average weight of its matches (name matches and repeated occurrences
        weigh more), capped at 1.0.

        Returns:
            (chunk, score) pairs, best first, ties by chunk id.
        """
        snapshot = self._snapshot
        terms = extract_query_terms(text)
        if not terms:
            return []

        candidates: set[str] = set()
        for term in terms:
            candidates |= snapshot.postings.get(term, frozenset())

        scored: list[tuple[CodeChunk, float]] = []
        for chunk_id in candidates:
            freqs = snapshot.term_freqs[chunk_id]
            names = snapshot.name_terms[chunk_id]
            matched = 0
            weight = 0.0
            for term in terms:
                tf = freqs.get(term, 0)
                if tf == 0:
                    continue
                matched += 1
                weight += NAME_MATCH_WEIGHT if term in names else 1.0
                weight += min(MAX_TF_BOOST, TF_BOOST_PER_OCCURRENCE * (tf - 1))

            ratio = matched / len(terms)
            score = min(1.0, ratio * (weight / matched) / NAME_MATCH_WEIGHT)
            scored.append((snapshot.chunks[chunk_id], score))

        scored.sort(key=lambda pair: (-pair[1], pair[0].id))
        return scored if limit is None else scored[:limit]

    def chunks_in_files(self, file_paths: Iterable[str]) -> list[CodeChunk]:
        """All indexed chunks belonging to the given files."""
        snapshot = self._snapshot
        return [
            snapshot.chunks[chunk_id]
            for path in dict.fromkeys(file_paths)
            for chunk_id in snapshot.files.get(path, ())
        ]

    def get(self, chunk_id: str) -> CodeChunk | None:
        return self._snapshot.chunks.get(chunk_id)
