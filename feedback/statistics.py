from __future__ import annotations

from collections import defaultdict
from typing import Any, Dict, List

from schemas.records import utcnow
from storage.store import Store


COLLECTIONS = ("patterns", "merchants", "transactions", "models", "feedback")


def _average_by(records: List[Dict[str, Any]], field: str) -> Dict[str, Dict[str, float]]:
    sums: Dict[str, float] = defaultdict(float)
    counts: Dict[str, int] = defaultdict(int)
    for rec in records:
        key = rec.get(field) or "UNKNOWN"
        sums[key] += float(rec.get("overall_confidence") or 0.0)
        counts[key] += 1
    return {k: {"transactions": counts[k], "average_confidence": round(sums[k] / counts[k], 4)} for k in sorted(counts)}


async def compute_statistics(store: Store) -> Dict[str, Any]:
    """Snapshot of what the system has seen and learned; stored under statistics/current."""
    counts = {name: await store.count(name) for name in COLLECTIONS}
    transactions = await store.get_all("transactions")
    feedback = await store.get_all("feedback")
    patterns = await store.get_all("patterns")

    corrected = sum(
        1 for f in feedback if (f.get("corrections") or {}).get("merchant") or (f.get("corrections") or {}).get("category")
    )
    stats: Dict[str, Any] = {
        "key": "current",
        "counts": counts,
        "by_bank": _average_by(transactions, "bank"),
        "by_category": _average_by(transactions, "category"),
        "ml_enhanced": sum(1 for t in transactions if t.get("ml_enhanced")),
        "feedback_corrected": corrected,
        "pattern_accuracy": (
            round(sum(float(p.get("accuracy") or 0.0) for p in patterns) / len(patterns), 4) if patterns else None
        ),
        "models": {m["name"]: {"version": m.get("version"), "accuracy": m.get("accuracy")} for m in await store.get_all("models")},
        "computed_at": utcnow(),
    }
    await store.put("statistics", stats)
    return stats
