#!/usr/bin/env python
"""Generate a random import payload for trying out nt_import_nodes.

Builds a flat list of notes with ``id``/``parentId`` references forming a
random forest, optionally sprinkling in malformed records to exercise the
per-record failure path.

Usage:
    python scripts/create_sample_import.py --count 500 --output /tmp/sample_import.json
    python scripts/create_sample_import.py --count 100 --malformed 5
"""

import argparse
import json
import random
from pathlib import Path


def build_payload(count: int, malformed: int, max_depth: int, seed: int) -> dict:
    rng = random.Random(seed)
    depth_of = {}
    notes = []

    for i in range(1, count + 1):
        candidates = [n for n, d in depth_of.items() if d < max_depth - 1]
        parent = rng.choice(candidates) if candidates and rng.random() < 0.7 else None
        depth_of[i] = depth_of[parent] + 1 if parent else 0
        notes.append({
            "id": i,
            "parentId": parent,
            "content": f"Sample note {i}",
            "order": rng.randint(0, 20),
            "time_set": f"{rng.randint(0, 23):02d}:{rng.randint(0, 59):02d}" if rng.random() < 0.2 else None,
            "is_discussion": rng.random() < 0.1,
        })

    # Non-text content is rejected record by record
    for note in rng.sample(notes, min(malformed, len(notes))):
        note["content"] = {"broken": True}

    return {"project": {"name": f"Sample import ({count} notes)"}, "notes": notes}


def main():
    parser = argparse.ArgumentParser(description="Create a sample import payload")
    parser.add_argument("--count", type=int, default=200, help="Number of notes")
    parser.add_argument("--malformed", type=int, default=0, help="Notes with invalid content")
    parser.add_argument("--max-depth", type=int, default=4, help="Maximum tree depth")
    parser.add_argument("--seed", type=int, default=42, help="Random seed")
    parser.add_argument(
        "--output", default="sample_import.json", help="Where to write the payload"
    )
    args = parser.parse_args()

    payload = build_payload(args.count, args.malformed, args.max_depth, args.seed)
    output = Path(args.output)
    output.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    roots = sum(1 for n in payload["notes"] if n["parentId"] is None)
    print(f"Wrote {len(payload['notes'])} notes ({roots} roots, {args.malformed} malformed) to {output}")


if __name__ == "__main__":
    main()
