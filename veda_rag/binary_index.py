"""
binary_index.py — gzip-wrapped, length-prefixed corpus file

Layout of the decompressed payload (all integers uint32 little-endian):

    [headerLen][header JSON][entryCount][reservedTotalSize]
    entryCount x [idLen][id][textLen][text][sourceLen][source][refLen][ref][embLen][emb]

emb is embLen/4 float32 values, little-endian, packed back to back.
Any length that overruns the buffer, a ragged embedding, or bytes left after
the last entry is a FormatError: offsets are the only integrity check.
"""

import gzip
import json
import struct
import zlib
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np

from .config import log_debug
from .errors import FormatError
from .models import CorpusEntry

FORMAT_NAME = "veda-rag-binary"
FORMAT_VERSION = 1

_U32 = struct.Struct("<I")


class _Reader:
    def __init__(self, buf: bytes):
        self.buf = buf
        self.offset = 0

    @property
    def remaining(self) -> int:
        return len(self.buf) - self.offset

    def u32(self, what: str) -> int:
        if self.remaining < 4:
            raise FormatError(f"truncated {what} length at offset {self.offset}")
        (value,) = _U32.unpack_from(self.buf, self.offset)
        self.offset += 4
        return value

    def chunk(self, n: int, what: str) -> bytes:
        if n > self.remaining:
            raise FormatError(
                f"{what} declares {n} bytes at offset {self.offset}, only {self.remaining} remain")
        out = self.buf[self.offset:self.offset + n]
        self.offset += n
        return out

    def string(self, what: str) -> str:
        raw = self.chunk(self.u32(what), what)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise FormatError(f"{what} is not valid UTF-8: {e}") from e


def _ungzip(data: bytes) -> bytes:
    try:
        return gzip.decompress(data)
    except (OSError, EOFError, zlib.error) as e:
        raise FormatError(f"not a valid gzip payload: {e}") from e


def decode_with_header(data: bytes) -> Tuple[Dict, List[CorpusEntry]]:
    r = _Reader(_ungzip(data))

    header_raw = r.chunk(r.u32("header"), "header")
    try:
        header = json.loads(header_raw.decode("utf-8")) if header_raw else {}
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FormatError(f"header is not valid JSON: {e}") from e
    if not isinstance(header, dict):
        raise FormatError("header JSON must be an object")

    count = r.u32("entry count")
    r.u32("reserved total size")  # informational only

    entries: List[CorpusEntry] = []
    for i in range(count):
        try:
            entry_id = r.string("id")
            text = r.string("text")
            source = r.string("source")
            ref = r.string("reference")
            emb_raw = r.chunk(r.u32("embedding"), "embedding")
        except FormatError as e:
            raise FormatError(f"entry {i}/{count}: {e}") from e
        if len(emb_raw) % 4:
            raise FormatError(f"entry {i}/{count}: embedding length {len(emb_raw)} is not a multiple of 4")
        emb = np.frombuffer(emb_raw, dtype="<f4").astype(np.float32)
        entries.append(CorpusEntry(id=entry_id, text=text, source_label=source,
                                   reference=ref, embedding=emb))

    if r.remaining:
        raise FormatError(f"{r.remaining} trailing bytes after {count} entries")
    return header, entries


def decode(data: bytes) -> List[CorpusEntry]:
    return decode_with_header(data)[1]


def _pack_str(s: str) -> bytes:
    raw = s.encode("utf-8")
    return _U32.pack(len(raw)) + raw


def encode(entries: Iterable[CorpusEntry], header: Optional[Dict] = None) -> bytes:
    """Inverse of decode(); header defaults to format/version/dimension/count."""
    entries = list(entries)
    hdr = {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "count": len(entries),
        "dimension": entries[0].dimension if entries else 0,
    }
    if header:
        hdr.update(header)

    body = bytearray()
    for e in entries:
        body += _pack_str(e.id)
        body += _pack_str(e.text)
        body += _pack_str(e.source_label)
        body += _pack_str(e.reference)
        emb = np.asarray(e.embedding, dtype="<f4").tobytes()
        body += _U32.pack(len(emb)) + emb

    header_raw = json.dumps(hdr, ensure_ascii=False).encode("utf-8")
    payload = (_U32.pack(len(header_raw)) + header_raw
               + _U32.pack(len(entries)) + _U32.pack(len(body)) + bytes(body))
    return gzip.compress(payload)


def load_index(path: str) -> Tuple[Dict, List[CorpusEntry]]:
    p = Path(path)
    log_debug(f"📦 Loading binary index: {p}")
    try:
        data = p.read_bytes()
    except OSError as e:
        raise FormatError(f"cannot read index file {p}: {e}") from e
    header, entries = decode_with_header(data)
    log_debug(f"✅ Binary index loaded: {header.get('format', '?')} | {len(entries)} entries")
    return header, entries


def save_index(path: str, entries: Iterable[CorpusEntry], header: Optional[Dict] = None) -> int:
    data = encode(entries, header)
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    return len(data)
