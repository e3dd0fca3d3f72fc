"""Company Research - multi-query company research tool

Simple CLI for running a research session against one company.
"""

import argparse
import asyncio
import sys

from pydantic import ValidationError

from company_research.errors import ConfigurationError
from company_research.models.research import ResearchProgress
from company_research.models.schemas import StartResearchRequest
from company_research.services.research_service import CompanyResearchService
from company_research.services.templates import RESEARCH_TYPE_TEMPLATES


def build_request(args: argparse.Namespace) -> StartResearchRequest:
    config: dict = {
        "enable_synthesis": not args.no_synthesis,
        "save_to_database": args.save,
    }
    if args.template:
        config["template_ids"] = args.template
    if args.max_concurrency is not None:
        config["max_concurrent_queries"] = args.max_concurrency
    if args.max_cost is not None:
        config["max_cost_usd"] = args.max_cost
    if args.timeout_ms is not None:
        config["timeout_ms"] = args.timeout_ms

    return StartResearchRequest.model_validate(
        {
            "research_type": args.research_type,
            "company_data": {
                "name": args.company,
                "industry": args.industry,
                "competitors": args.competitor or [],
                "technologies": args.technology or [],
                "focus_areas": args.focus or [],
            },
            "config": config,
        }
    )


def make_printer():
    last_label: list[str | None] = [None]

    def on_progress(progress: ResearchProgress) -> None:
        if progress.current_query and progress.current_query != last_label[0]:
            last_label[0] = progress.current_query
            done = progress.completed_queries + progress.failed_queries
            print(f"  [{done}/{progress.total_queries}] {progress.current_query}")

    return on_progress


async def run_research(args: argparse.Namespace) -> int:
    request = build_request(args)
    config = request.to_session_config()

    print(f"Researching: {config.variables.company_name}")
    print(f"Templates: {', '.join(config.template_ids)}")
    print("-" * 50)

    service = CompanyResearchService.from_settings()
    try:
        started = await service.start_research_session(args.company_id, "cli", config)
        service.subscribe_to_progress(started.session_id, make_printer())
        progress = await service.wait_for_session(started.session_id)
        results = service.get_session_results(started.session_id)
    finally:
        await service.aclose()

    if progress is None or results is None:
        print("\n[!] Session disappeared before completion")
        return 1

    print(f"\n[*] Session {progress.status.value}")
    print(f"   Queries: {progress.completed_queries} completed, {progress.failed_queries} failed")
    print(f"   Cost: ${progress.total_cost_usd:.4f}  Tokens: {progress.total_tokens}")
    if progress.error_message:
        print(f"   Error: {progress.error_message}")

    print(f"\n{'=' * 50}")
    print(f"FINDINGS ({len(results.findings)}):")
    print(f"{'=' * 50}")
    for finding in results.findings:
        print(
            f"- [{finding.priority_level.value}] {finding.title} "
            f"({finding.finding_type.value}, confidence {finding.confidence_score:.2f})"
        )

    synthesis = results.synthesis
    if synthesis is not None:
        print(f"\n{'=' * 50}")
        print("SYNTHESIS:")
        print(f"{'=' * 50}")
        print(synthesis.executive_summary)
        if synthesis.actionable_opportunities:
            print("\nOpportunities:")
            for opportunity in synthesis.actionable_opportunities:
                print(f"  * {opportunity.title} (impact: {opportunity.estimated_impact.value})")
        if synthesis.risk_factors:
            print("\nRisks:")
            for risk in synthesis.risk_factors:
                print(f"  * {risk}")
        print("\nNext steps:")
        for step in synthesis.recommended_next_steps:
            print(f"  * {step}")

    return 0 if progress.status.value == "completed" else 1


def main():
    parser = argparse.ArgumentParser(description="Company Research Tool")
    parser.add_argument("--company", "-c", required=True, help="Company name")
    parser.add_argument("--company-id", default="cli", help="Company id recorded on the session")
    parser.add_argument(
        "--research-type",
        "-t",
        default="comprehensive",
        choices=sorted(RESEARCH_TYPE_TEMPLATES),
        help="Named template set (ignored when --template is given)",
    )
    parser.add_argument("--template", action="append", help="Template id (repeatable)")
    parser.add_argument("--industry", help="Company industry")
    parser.add_argument("--competitor", action="append", help="Competitor name (repeatable)")
    parser.add_argument("--technology", action="append", help="Relevant technology (repeatable)")
    parser.add_argument("--focus", action="append", help="Focus area (repeatable)")
    parser.add_argument("--max-concurrency", type=int, help="Queries per batch")
    parser.add_argument("--max-cost", type=float, help="Cost ceiling in USD")
    parser.add_argument("--timeout-ms", type=int, help="Per-query timeout in milliseconds")
    parser.add_argument("--no-synthesis", action="store_true", help="Skip the synthesis step")
    parser.add_argument("--save", action="store_true", help="Persist the session to Supabase")

    args = parser.parse_args()

    try:
        sys.exit(asyncio.run(run_research(args)))
    except (ConfigurationError, ValidationError) as exc:
        print(f"[!] Invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
