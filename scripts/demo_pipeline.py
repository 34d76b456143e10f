#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import math
import pathlib
import sys
import time
from typing import Any

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from xray import ClientConfig, Tracer

PRICE_MIN = 15.0
PRICE_MAX = 80.0
MIN_RATING = 4.0
MIN_REVIEWS = 20


def _catalog(size: int) -> list[dict[str, Any]]:
    return [
        {
            "asin": f"ASIN_{i}",
            "title": "Phone case silicone" if i % 120 == 0 else f"Laptop stand {i}",
            "price": 9.99 if i % 7 == 0 else 29.99,
            "rating": 3.5 + (i % 15) / 10,
            "reviews": i % 300,
        }
        for i in range(size)
    ]


def _rejection_reasons(product: dict[str, Any]) -> list[str]:
    reasons: list[str] = []
    if product["price"] < PRICE_MIN:
        reasons.append("PRICE_TOO_LOW")
    if product["price"] > PRICE_MAX:
        reasons.append("PRICE_TOO_HIGH")
    if product["rating"] < MIN_RATING:
        reasons.append("RATING_TOO_LOW")
    if product["reviews"] < MIN_REVIEWS:
        reasons.append("REVIEWS_TOO_LOW")
    return reasons


def _score(product: dict[str, Any]) -> float:
    return product["rating"] * math.log(1 + product["reviews"])


def _as_candidates(products: list[dict[str, Any]], *, with_score: bool = False) -> list[dict[str, Any]]:
    out = []
    for idx, p in enumerate(products):
        item: dict[str, Any] = {
            "candidateId": p["asin"],
            "candidateType": "product",
            "rank": idx + 1,
            "payload": {k: p[k] for k in ("title", "price", "rating", "reviews")},
        }
        if with_score:
            item["score"] = _score(p)
        out.append(item)
    return out


def run_demo(tracer: Tracer, *, catalog_size: int) -> dict[str, Any]:
    title = "Laptop stand for desk"
    with tracer.start_run(
        trace_id=f"req_{int(time.time() * 1000)}",
        pipeline="competitor_discovery",
        pipeline_version="1.0.0",
        input={"sellerAsin": "SELLER_123", "title": title},
        tags={"env": "local", "team": "pricing"},
    ) as run:
        with run.step(
            "generate_keywords",
            "llm",
            input={"title": title},
            capture_policy={"mode": "SUMMARY_ONLY"},
        ) as s1:
            keywords = ["laptop stand", "portable stand", "aluminum stand"]
            s1.set_output({"keywords": keywords})
            s1.set_reasoning({"model": "mock-llm", "notes": "title expanded into search intents"})

        raw = _catalog(catalog_size)
        with run.step(
            "search_catalog",
            "api_call",
            input={"keywords": keywords},
            capture_policy={"mode": "TOP_K", "topK": 50, "includeOutcomes": False},
        ) as s2:
            s2.add_candidates(_as_candidates(raw))
            s2.set_output({"total": len(raw)})

        with run.step(
            "filter_candidates",
            "filter",
            input={"priceMin": PRICE_MIN, "priceMax": PRICE_MAX, "minRating": MIN_RATING, "minReviews": MIN_REVIEWS},
            capture_policy={"mode": "TOP_K", "topK": 50},
        ) as s3:
            s3.add_candidates(_as_candidates(raw))
            kept = []
            for p in raw:
                reasons = _rejection_reasons(p)
                if reasons:
                    s3.reject(
                        p["asin"],
                        "product",
                        reasons[0],
                        reason_detail={"reasons": reasons},
                        reasoning_text=f"Rejected due to {', '.join(reasons)}",
                    )
                else:
                    s3.accept(p["asin"], "product", "PASSED_FILTERS")
                    kept.append(p)
            s3.set_output({"kept": len(kept)})

        with run.step(
            "rank_and_select",
            "select",
            input={"method": "rating_log_reviews"},
            capture_policy={"mode": "TOP_K", "topK": 50},
        ) as s4:
            ranked = sorted(kept, key=_score, reverse=True)
            top = ranked[0] if ranked else None
            s4.add_candidates(_as_candidates(ranked[:200], with_score=True))
            if top is not None:
                s4.select(top["asin"], "product", "TOP_SCORE", reason_detail={"score": _score(top)})
            s4.set_output({"selected": top})

        selected = top["asin"] if top is not None else None
        run.end_success({"competitorAsin": selected})
    return {"run_id": run.run_id, "selected": selected, "kept": len(kept), "total": len(raw)}


def main() -> int:
    parser = argparse.ArgumentParser(description="Trace a sample competitor-discovery pipeline.")
    parser.add_argument("--endpoint", default="", help="ingestion service base URL (defaults to XRAY_ENDPOINT)")
    parser.add_argument("--catalog-size", type=int, default=5000, help="number of fake catalog products")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    config = ClientConfig.from_env()
    if args.endpoint:
        config = ClientConfig(
            endpoint=args.endpoint,
            api_key=config.api_key,
            timeout_ms=config.timeout_ms,
            flush_interval_ms=config.flush_interval_ms,
            max_queue=config.max_queue,
            batch_size=config.batch_size,
            auto_flush=config.auto_flush,
        )
    tracer = Tracer(config)
    try:
        summary = run_demo(tracer, catalog_size=max(1, args.catalog_size))
    finally:
        stats = tracer.shutdown(flush=True)
    summary["flush"] = stats.as_dict() if stats is not None else None
    print(json.dumps({"success": True, "data": summary}, ensure_ascii=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
