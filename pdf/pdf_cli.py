from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any, Dict, List

from pdf.statement_service import StatementService
from pipeline.pipeline import build_pipeline, build_store


async def _run(paths: List[str], store_dir: str | None, models_dir: str | None, show_transactions: bool) -> None:
    store = build_store("json", store_dir) if store_dir else build_store("memory")
    pipeline = build_pipeline(store=store, models_dir=models_dir)
    await pipeline.start()
    service = StatementService(pipeline.orchestrator)

    for path in paths:
        if not os.path.exists(path):
            print(json.dumps({"file": path, "error": "not_found"}))
            continue
        try:
            with open(path, "rb") as f:
                content = f.read()
            result = await service.process_upload(content, filename=os.path.basename(path))
            detection = result.bank_detection
            summary: Dict[str, Any] = {
                "file": path,
                "state": result.state.value,
                "bank": detection.bank if detection else None,
                "bank_confidence": round(result.confidence, 3),
                "method": detection.method if detection else None,
                "transactions": len(result.transactions),
                "ml_enhanced": result.metrics.get("ml_enhanced_count", 0),
                "average_confidence": result.metrics.get("average_confidence"),
                "ms": round(result.processing_time_ms, 1),
            }
            if result.error:
                summary["error"] = result.error
            if show_transactions:
                summary["items"] = [
                    {"date": t.date, "amount": t.amount, "merchant": t.merchant, "category": t.category, "hash": t.hash}
                    for t in result.transactions
                ]
            print(json.dumps(summary, ensure_ascii=False))
        except Exception as e:
            print(json.dumps({"file": path, "error": str(e)}))


def main() -> None:
    parser = argparse.ArgumentParser(description="Extract transactions from bank statements and print a summary")
    parser.add_argument("paths", nargs="+", help="PDF, image or text statement files")
    parser.add_argument("--store", default=None, help="Directory for the JSON store (default: in-memory)")
    parser.add_argument("--models", default=None, help="Directory holding trained model files")
    parser.add_argument("--transactions", action="store_true", help="Include extracted transactions in the output")
    args = parser.parse_args()
    asyncio.run(_run(args.paths, args.store, args.models, args.transactions))


if __name__ == "__main__":
    main()
