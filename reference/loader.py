"""
Reference Kanji Loader

Loads kanji from JSON data files in the reference/ directory
and upserts them into the store.

This allows:
- PRs to be readable (JSON diffs instead of Python code changes)
- Deployments to share the same kanji set
- Re-running safely: metadata is updated, current_users is never touched

Usage:
    from reference.loader import load_reference_kanjis
    result = load_reference_kanjis(store)
"""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from kanji_daisuki.db.store import InMemoryStore, Store
from kanji_daisuki.schemas import Kanji


# Reference directory
REFERENCE_DIR = Path(__file__).parent
KANJI_FILE = "kanjis.json"


def load_kanji_file(filename: str = KANJI_FILE) -> dict:
    """Load a kanji data file."""
    with open(REFERENCE_DIR / filename, "r", encoding="utf-8") as f:
        return json.load(f)


@dataclass
class LoadResult:
    """Result of loading reference kanji."""
    store: Store
    loaded: list[tuple[int, str]] = field(default_factory=list)   # (id, char)
    errors: list[tuple[str, str]] = field(default_factory=list)   # (entry, error_message)


def load_reference_kanjis(
    store: Optional[Store] = None,
    filename: str = KANJI_FILE,
    verbose: bool = False,
) -> LoadResult:
    """
    Upsert every kanji in the reference file.

    Args:
        store: Target store. Creates an InMemoryStore if None.
        filename: Data file under reference/.
        verbose: Print progress messages.
    """
    if store is None:
        store = InMemoryStore()

    def log(msg: str):
        if verbose:
            print(msg)

    data = load_kanji_file(filename)
    result = LoadResult(store=store)

    for entry in data.get("kanjis", []):
        label = str(entry.get("char") or entry.get("id"))
        # current_users is owned by the claim path, never by seed data
        entry = {k: v for k, v in entry.items() if k != "current_users"}
        try:
            kanji = store.upsert_kanji(Kanji(**entry))
        except ValidationError as e:
            result.errors.append((label, str(e)))
            log(f"  [FAIL] {label}: {e}")
            continue
        result.loaded.append((kanji.id, kanji.char))
        log(f"  [OK] {kanji.id}: {kanji.char} ({kanji.current_users} holders)")

    log(f"Kanji loaded: {len(result.loaded)}")
    if result.errors:
        log(f"Errors: {len(result.errors)}")
    return result


def main():
    """Run as standalone script against an in-memory store."""
    import sys
    sys.stdout.reconfigure(encoding='utf-8')
    load_reference_kanjis(verbose=True)


if __name__ == "__main__":
    main()
