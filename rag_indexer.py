# rag_indexer.py — JSONL verse corpus → embeddings → gzip binary index (+ ad-hoc search)
#
#   python rag_indexer.py build --corpus data/rigveda.jsonl --out data/rigveda-512d.bin
#   python rag_indexer.py search "नासदीय सूक्त" --mode hybrid --limit 5
#
# One JSON object per corpus line: {"id", "text", "source", "reference"}.

import argparse
import asyncio
import json
import sys
from typing import Dict, List, Optional, Sequence

from veda_rag.binary_index import load_index, save_index
from veda_rag.config import EMBED_DIM, EMBED_MODEL, INDEX_PATH
from veda_rag.embedding import SentenceTransformerEmbedder
from veda_rag.errors import VedaRagError
from veda_rag.models import CorpusEntry
from veda_rag.search_engine import SearchEngine

BATCH_SIZE = 64


def load_corpus(path: str) -> List[Dict]:
    records = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                rec = json.loads(line)
            except json.JSONDecodeError as e:
                print(f"❌ Skipping line {lineno}: {e}")
                continue
            if not rec.get("text"):
                print(f"⚠️ Skipping line {lineno}: no text")
                continue
            records.append({
                "id": str(rec.get("id") or rec.get("reference") or lineno),
                "text": rec["text"],
                "source": rec.get("source") or rec.get("source_label") or "",
                "reference": str(rec.get("reference") or ""),
            })
    return records


def build_entries(records: Sequence[Dict], embedder, batch_size: int = BATCH_SIZE) -> List[CorpusEntry]:
    entries: List[CorpusEntry] = []
    for start in range(0, len(records), batch_size):
        batch = records[start:start + batch_size]
        vecs = embedder.encode_documents([r["text"] for r in batch], show_progress_bar=False)
        for rec, vec in zip(batch, vecs):
            entries.append(CorpusEntry(id=rec["id"], text=rec["text"], source_label=rec["source"],
                                       reference=rec["reference"], embedding=vec))
        print(f"🧠 Embedded {min(start + batch_size, len(records))}/{len(records)}")
    return entries


def cmd_build(args) -> int:
    print(f"🔍 Indexing corpus from: {args.corpus}")
    records = load_corpus(args.corpus)
    if not records:
        print("🚫 No valid verses found. Exiting.")
        return 1

    embedder = SentenceTransformerEmbedder(args.model, args.dim)
    entries = build_entries(records, embedder, args.batch)
    size = save_index(args.out, entries, header={"model": args.model, "dimension": args.dim})
    print(f"✅ Indexed {len(entries)} verses → {args.out} ({size} bytes)")
    return 0


def cmd_search(args) -> int:
    try:
        header, entries = load_index(args.index)
    except VedaRagError as e:
        print(f"❌ {e}")
        return 1
    engine = SearchEngine()
    engine.build(entries)

    if args.mode == "reference":
        hits = engine.reference_search(args.query, args.limit)
    elif args.mode == "text":
        hits = engine.text_search(args.query, args.limit)
    else:
        embedder = SentenceTransformerEmbedder(header.get("model") or EMBED_MODEL, engine.dimension)
        emb = asyncio.run(embedder.embed(args.query))
        if args.mode == "vector":
            hits = engine.vector_search(emb, args.limit)
        else:
            hits = engine.hybrid_search(args.query, emb, args.limit)

    if not hits:
        print("📭 No results.")
        return 0
    for i, hit in enumerate(hits, 1):
        print(f"{i:2d}. [{hit.reference or hit.entry_id}] {hit.score:.4f}  {hit.source_label}")
        print(f"    {hit.text[:200]}")
    return 0


def parse_args(argv: Optional[Sequence[str]] = None):
    p = argparse.ArgumentParser(description="Build or query the RigVeda binary index.")
    sub = p.add_subparsers(dest="command", required=True)

    b = sub.add_parser("build", help="embed a JSONL corpus into a binary index")
    b.add_argument("--corpus", required=True)
    b.add_argument("--out", default=INDEX_PATH)
    b.add_argument("--model", default=EMBED_MODEL)
    b.add_argument("--dim", type=int, default=EMBED_DIM)
    b.add_argument("--batch", type=int, default=BATCH_SIZE)
    b.set_defaults(func=cmd_build)

    s = sub.add_parser("search", help="query a built index")
    s.add_argument("query")
    s.add_argument("--index", default=INDEX_PATH)
    s.add_argument("--limit", type=int, default=5)
    s.add_argument("--mode", choices=("hybrid", "vector", "text", "reference"), default="hybrid")
    s.set_defaults(func=cmd_search)
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
