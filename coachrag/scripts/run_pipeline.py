"""
CoachRAG - Run One Pipeline Request
====================================
Fetches the deployed prompt, retrieves context, calls the deployed model,
prints the assistant's answer with cost/latency metrics, and submits the
trace.

Usage:
    python -m coachrag.scripts.run_pipeline
    python -m coachrag.scripts.run_pipeline --var RUN_BLOCK="10K in 45 minutes" --top-k 3
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from collections.abc import Sequence


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="run_pipeline", description="CoachRAG — run one retrieval-augmented generation request.")
    parser.add_argument("--var", action="append", default=[], metavar="NAME=VALUE", help="Template variable (repeatable). Defaults are used when none are given.")
    parser.add_argument("--top-k", type=int, default=None, help="Number of context chunks to retrieve.")
    return parser.parse_args(argv)


def _parse_variables(pairs: list[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            raise SystemExit(f"Invalid --var '{pair}', expected NAME=VALUE.")
        variables[name.strip()] = value
    return variables


async def _run(args: argparse.Namespace) -> int:
    import httpx

    from coachrag.config.prompt_templates import DEFAULT_QUERY_VARIABLES
    from coachrag.config.settings import settings
    from coachrag.src.core.deployment import DeploymentCache
    from coachrag.src.core.providers import build_embedder
    from coachrag.src.core.rag_engine import RAGOrchestrator
    from coachrag.src.core.retrieval import RetrievalPipeline
    from coachrag.src.database.vector_store import VectorStore
    from coachrag.src.observability.submitter import TraceSubmitter

    variables = {**DEFAULT_QUERY_VARIABLES, **_parse_variables(args.var)}

    async with httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT_SECONDS) as client:
        retrieval = RetrievalPipeline(embedder=build_embedder(), vector_store=VectorStore())
        rag = RAGOrchestrator(deployment=DeploymentCache(http_client=client), retrieval=retrieval, submitter=TraceSubmitter(http_client=client), top_k=args.top_k)
        result = await rag.run(variables)

    print("\n" + "=" * 60 + "\n")
    if result.ok:
        print("✅ Assistant response:\n")
        print(result.text)
    else:
        print(f"❌ Pipeline failed: {result.error}")
    print("\n" + "=" * 60 + "\n")

    m = result.metrics()
    print("📊 Pipeline Metrics:")
    print(f"   Embedding Cost:  ${m['embedding_cost']:.6f}")
    print(f"   LLM Cost:        ${m['llm_cost']:.6f}")
    print("   ─────────────────────────────")
    print(f"   Total Cost:      ${m['total_cost']:.6f}")
    print(f"   Total Latency:   {m['total_latency_ms']}ms")
    print(f"   Spans Executed:  {m['span_count']}")
    submission = result.submission
    if submission is not None:
        state = "skipped" if submission.skipped else ("submitted" if submission.submitted else f"failed ({submission.error})")
        print(f"   Trace:           {result.trace.reference_id} — {state}")
    print()
    return 0 if result.ok else 1


def main(argv: Sequence[str] | None = None) -> None:
    args = _parse_args(argv)
    try:
        from coachrag.config.settings import settings  # noqa: F401
    except Exception as exc:
        print("\n[FATAL] Configuration error — check your .env file:\n")
        print(f"  {exc}")
        print()
        sys.exit(1)
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
