import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from sherlock.config import AppSettings, load_settings
from sherlock.errors import InvalidRequestError, SherlockError
from sherlock.heuristics import filter_by_numbers, number_sort_key, parse_number_list
from sherlock.media import local_evidence, resolve_media_path
from sherlock.orchestrator import AnalysisOrchestrator
from sherlock.projects import ProjectStore
from sherlock.schemas import AnalysisRequest, AnalysisResponse, RawResult, RejectedResult, ScoredResult


def parse_batch_file(path: Path) -> List[Dict[str, str]]:
    """TXT: ``<heuristic> <evidence>`` per line, ``#`` comments. JSON: list of objects."""
    if not path.exists():
        raise InvalidRequestError(f"Batch file not found: {path}")
    content = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        try:
            items = json.loads(content)
        except json.JSONDecodeError as exc:
            raise InvalidRequestError(f"Batch file is not valid JSON: {exc}") from exc
        if not isinstance(items, list):
            raise InvalidRequestError("Batch JSON must be a list of items.")
        parsed = []
        for item in items:
            if not isinstance(item, dict):
                continue
            heuristic = item.get("heuristic") or item.get("heuristicNumber")
            evidence = item.get("evidence") or item.get("file") or item.get("video")
            if heuristic and evidence:
                parsed.append(
                    {"heuristic": str(heuristic), "evidence": str(evidence), "context": str(item.get("context") or "")}
                )
        return parsed
    parsed = []
    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        parts = stripped.split(None, 1)
        if len(parts) == 2:
            parsed.append({"heuristic": parts[0], "evidence": parts[1].strip(), "context": ""})
    return parsed


def _print_status(message: str) -> None:
    print(f"  {message}...")


def _print_result(result: Any) -> None:
    if isinstance(result, RawResult):
        print("Raw response:")
        print(result.raw)
        return
    if isinstance(result, RejectedResult):
        print(f"x Heuristic {result.heuristicNumber}: {result.name}")
        print(f"   REJECTED: {result.rejectionReason}\n")
        return
    if isinstance(result, ScoredResult):
        icon = "+" if result.score >= 4 else ("~" if result.score >= 3 else "-")
        print(f"{result.heuristicNumber}: {result.name}")
        print(f"  {icon} Score: {result.score}/5")
        print(f"  {result.justification}\n")


def _print_usage(response: AnalysisResponse) -> None:
    usage = response.usage
    if not usage:
        return
    print("-" * 40)
    print(
        f"Tokens: {usage.totalTokenCount} "
        f"(prompt: {usage.promptTokenCount}, response: {usage.candidatesTokenCount})"
    )


async def run_analyze(
    args: argparse.Namespace,
    settings: AppSettings,
    store: ProjectStore,
    orchestrator: Optional[AnalysisOrchestrator] = None,
) -> int:
    project = store.resolve(args.project)
    print(f"Using project: {project.name}")
    media_path = resolve_media_path(args.media)
    numbers = parse_number_list(args.heuristics)
    all_criteria = project.load_heuristics()
    selected = filter_by_numbers(all_criteria, numbers)
    if not selected:
        available = ", ".join(sorted((c.heuristic_number for c in all_criteria), key=number_sort_key))
        print(f"No heuristic found for: {args.heuristics}")
        print(f"Available heuristics: {available}")
        return 1
    print(f"{len(selected)} heuristic(s) selected: {', '.join(numbers)}")

    owned = orchestrator is None
    orchestrator = orchestrator or AnalysisOrchestrator(settings)
    try:
        response = await orchestrator.analyze(
            AnalysisRequest(
                criteria=selected,
                evidence=[local_evidence(media_path)],
                context_text=args.context or "",
            ),
            system_prompt=project.load_system_prompt() or None,
            on_status=_print_status,
        )
    finally:
        if owned:
            await orchestrator.close()

    public = response.to_public()
    if args.json:
        print(json.dumps(public, indent=2, ensure_ascii=False))
    else:
        print("\nResults:\n")
        for result in response.results:
            _print_result(result)
        _print_usage(response)
    if args.output:
        Path(args.output).write_text(json.dumps(public, indent=2, ensure_ascii=False))
        print(f"Result saved to {args.output}")
    return 0


async def run_batch(
    args: argparse.Namespace,
    settings: AppSettings,
    store: ProjectStore,
    orchestrator: Optional[AnalysisOrchestrator] = None,
) -> int:
    project = store.resolve(args.project)
    print(f"Using project: {project.name}")
    all_criteria = project.load_heuristics()
    system_prompt = project.load_system_prompt() or None
    batch_path = Path(args.file)
    items = parse_batch_file(batch_path)
    if not items:
        print("No valid items found in the batch file.")
        return 1
    print(f"Batch: {batch_path.name} ({len(items)} items)\n")

    validated: List[Dict[str, Any]] = []
    for item in items:
        matches = filter_by_numbers(all_criteria, [item["heuristic"]])
        if not matches:
            print(f"Heuristic not found: {item['heuristic']}")
            if not args.continue_on_error:
                return 1
            continue
        try:
            media_path = resolve_media_path(item["evidence"], cwd=batch_path.parent.resolve())
        except InvalidRequestError as exc:
            print(f"Evidence not found: {item['evidence']} ({exc})")
            if not args.continue_on_error:
                return 1
            continue
        validated.append(
            {
                "criterion": matches[0],
                "path": media_path,
                "context": item["context"] or args.context or "",
            }
        )
    if not validated:
        print("Nothing left to process.")
        return 1

    owned = orchestrator is None
    orchestrator = orchestrator or AnalysisOrchestrator(settings)
    all_results: List[Dict[str, Any]] = []
    total_tokens = passed = failed = rejected = 0
    try:
        for idx, item in enumerate(validated, start=1):
            criterion = item["criterion"]
            file_name = item["path"].name
            print(f"[{idx}/{len(validated)}] {criterion.heuristic_number} -> {file_name}")
            try:
                response = await orchestrator.analyze(
                    AnalysisRequest(
                        criteria=[criterion],
                        evidence=[local_evidence(item["path"])],
                        context_text=item["context"],
                    ),
                    system_prompt=system_prompt,
                    on_status=_print_status,
                )
            except SherlockError as exc:
                print(f"  Error: {exc}\n")
                all_results.append(
                    {"heuristicNumber": criterion.heuristic_number, "fileName": file_name, "error": str(exc)}
                )
                if not args.continue_on_error:
                    return 1
                continue
            first = response.results[0]
            all_results.append(
                {"heuristicNumber": criterion.heuristic_number, "fileName": file_name, **first.model_dump(exclude_none=True)}
            )
            if isinstance(first, RejectedResult):
                rejected += 1
                print(f"  x REJECTED: {first.rejectionReason}")
            elif isinstance(first, ScoredResult) and first.score >= 4:
                passed += 1
                print(f"  + Score: {first.score}/5")
            else:
                failed += 1
                score = first.score if isinstance(first, ScoredResult) else "?"
                print(f"  ~ Score: {score}/5")
            if response.usage:
                total_tokens += response.usage.totalTokenCount
            print()
    finally:
        if owned:
            await orchestrator.close()

    print("-" * 48)
    summary = f"Summary: {len(validated)} analyses | {passed} pass | {failed} fail"
    if rejected:
        summary += f" | {rejected} rejected"
    print(summary)
    print(f"   Total tokens: {total_tokens:,}")
    if args.output:
        report = {
            "batchFile": str(args.file),
            "project": project.name,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "summary": {
                "total": len(validated),
                "pass": passed,
                "fail": failed,
                "rejected": rejected,
                "totalTokens": total_tokens,
            },
            "results": all_results,
        }
        Path(args.output).write_text(json.dumps(report, indent=2, ensure_ascii=False))
        print(f"Results saved to {args.output}")
    return 0


def run_projects(args: argparse.Namespace, store: ProjectStore) -> int:
    print("Available projects:\n")
    for project in store.list_projects():
        print(f"  {project['name']} - {project['description']}")
        print(f"    {project['heuristicsCount']} heuristics\n")
    return 0


def run_heuristics(args: argparse.Namespace, store: ProjectStore) -> int:
    project = store.resolve(args.project)
    criteria = project.load_heuristics()
    if args.group is not None:
        criteria = [c for c in criteria if c.group_number == args.group]
    print(f"Heuristics in project {project.name}:\n")
    grouped: Dict[str, List[Any]] = {}
    for criterion in criteria:
        grouped.setdefault(criterion.group or "Ungrouped", []).append(criterion)
    for group_name, items in grouped.items():
        number = items[0].group_number
        print(f"  Group {number}: {group_name}" if number is not None else f"  {group_name}")
        for criterion in sorted(items, key=lambda c: number_sort_key(c.heuristic_number)):
            print(f"    {criterion.heuristic_number} - {criterion.name}")
        print()
    return 0


def run_init(args: argparse.Namespace, store: ProjectStore) -> int:
    if not args.project_name:
        print("Usage: sherlock init <project>")
        print(f"Available projects: {', '.join(store.names())}")
        return 1
    target = store.init_local(args.project_name)
    print(f'Created {target.name} with project "{args.project_name}"')
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sherlock", description="AI heuristic UX analysis")
    parser.add_argument("--config", default=None, help="Path to config.json")
    subparsers = parser.add_subparsers(dest="command")

    analyze = subparsers.add_parser("analyze", help="Analyze one video or image")
    analyze.add_argument("media", help="Path (or unique prefix) of the video or image")
    analyze.add_argument("heuristics", help="Heuristic numbers, e.g. 3.16 or 3.16,3.17")
    analyze.add_argument("-p", "--project", help="Project name")
    analyze.add_argument("-c", "--context", help="Additional context")
    analyze.add_argument("-o", "--output", help="Save the result as JSON")
    analyze.add_argument("--json", action="store_true", help="Print the result as JSON")

    batch = subparsers.add_parser("batch", help="Analyze many items from a TXT or JSON file")
    batch.add_argument("file", help="Batch file")
    batch.add_argument("-p", "--project", help="Project name")
    batch.add_argument("-c", "--context", help="Context applied to every item")
    batch.add_argument("-o", "--output", help="Save all results as JSON")
    batch.add_argument("--continue-on-error", action="store_true", help="Keep going when an item fails")

    subparsers.add_parser("projects", help="List available projects")

    heuristics = subparsers.add_parser("heuristics", help="List a project's heuristics")
    heuristics.add_argument("-p", "--project", help="Project name")
    heuristics.add_argument("-g", "--group", type=int, help="Only this group number")

    init = subparsers.add_parser("init", help="Bind the current directory to a project")
    init.add_argument("project_name", nargs="?", help="Project name")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return 1
    settings = load_settings(Path(args.config) if args.config else None)
    logging.basicConfig(level=settings.log_level.upper(), format="%(levelname)s %(message)s")
    store = ProjectStore(Path(settings.projects_dir), settings.default_project)
    try:
        if args.command == "analyze":
            return asyncio.run(run_analyze(args, settings, store))
        if args.command == "batch":
            return asyncio.run(run_batch(args, settings, store))
        if args.command == "projects":
            return run_projects(args, store)
        if args.command == "heuristics":
            return run_heuristics(args, store)
        if args.command == "init":
            return run_init(args, store)
    except SherlockError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
