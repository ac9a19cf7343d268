"""Command line interface for Concord."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Any, List

from concord.config import Config, get_config
from concord.convergence import SuccessCriteria
from concord.models.dispatch import DispatchClient
from concord.models.groq import GroqClient
from concord.models.quota import default_tracker, format_wait
from concord.oracle import LLMOracle
from concord.orchestrator import NegotiationOrchestrator, NegotiationResult
from concord.scenarios import Scenario, find_scenario, load_scenarios
from concord.store import RunStore


def _print(obj: Any) -> None:
    print(json.dumps(obj, indent=2))


def _load(config: Config) -> List[Scenario]:
    return load_scenarios(config.scenarios_path, SuccessCriteria.from_dict(config.success_defaults))


def cmd_scenarios(args: argparse.Namespace) -> None:
    config = get_config()
    for scenario in _load(config):
        expect = "converge" if scenario.expected_convergence else "diverge"
        names = ", ".join(p.name for p in scenario.personas)
        print(f"{scenario.id:<30} {scenario.difficulty:<11} expect {expect:<9} {names}")


def _summary_line(result: NegotiationResult) -> str:
    p = result.participation
    mark = "PASS" if result.success else "FAIL"
    return (
        f"[{mark}] {result.scenario_id}: {result.status} in {len(result.rounds)} round(s), "
        f"accept {p.acceptances}, reservations {p.reservations}, object {p.objections}, "
        f"opt-out {p.opt_outs}, violated {len(result.constraints.violated)}, "
        f"{result.timing.get('total', 0.0):.1f}s"
    )


async def _run_scenarios(config: Config, scenarios: List[Scenario], max_rounds: int | None) -> List[NegotiationResult]:
    oracle = LLMOracle.from_config(config)
    orchestrator = NegotiationOrchestrator(oracle, config, store=RunStore(config.data_dir), max_rounds=max_rounds)
    results = []
    for scenario in scenarios:
        print(f"Running {scenario.id} ({len(scenario.personas)} parties)...", file=sys.stderr)
        result = await orchestrator.run(scenario)
        print(_summary_line(result), file=sys.stderr)
        for violated in result.constraints.violated:
            print(f"    violated: {violated}", file=sys.stderr)
        results.append(result)
    return results


def cmd_run(args: argparse.Namespace) -> None:
    config = get_config()
    available = _load(config)
    if args.scenario:
        selected = []
        for scenario_id in args.scenario:
            scenario = find_scenario(available, scenario_id)
            if scenario is None:
                print(f"Unknown scenario: {scenario_id}", file=sys.stderr)
                sys.exit(2)
            selected.append(scenario)
    else:
        selected = available
    if not selected:
        print("No scenarios to run", file=sys.stderr)
        sys.exit(2)

    results = asyncio.run(_run_scenarios(config, selected, args.max_rounds))
    summary = {
        "total": len(results),
        "passed": sum(1 for r in results if r.success),
        "converged": sum(1 for r in results if r.converged),
        "failed": sum(1 for r in results if r.status == "failed"),
        "cancelled": sum(1 for r in results if r.status == "cancelled"),
    }
    payload = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S"),
        "summary": summary,
        "results": [r.to_dict() for r in results],
    }
    output_dir = Path(args.output_dir).expanduser() if args.output_dir else config.data_dir / "results"
    output_dir.mkdir(parents=True, exist_ok=True)
    path = output_dir / f"results-{time.strftime('%Y%m%d-%H%M%S')}.json"
    path.write_text(json.dumps(payload, indent=2))
    summary["output_json"] = str(path)
    _print(summary)


async def _probe_quota(config: Config, model: str) -> dict:
    client = GroqClient.from_config(config.models)
    dispatch = DispatchClient.from_config(client, config.dispatch)
    tracker = default_tracker()
    await tracker.initialize(model, lambda: dispatch.probe(model))
    return tracker.snapshot()


def cmd_quota(args: argparse.Namespace) -> None:
    config = get_config()
    model = args.model or config.phase_model("default")
    snapshot = asyncio.run(_probe_quota(config, model))
    state = snapshot.get(model)
    if not state:
        print(f"No quota information for {model}", file=sys.stderr)
        sys.exit(1)
    wait_ms = default_tracker().get_wait_ms(model)
    state["wait"] = format_wait(wait_ms) if wait_ms > 0 else "none"
    _print({model: state})


def cmd_runs(args: argparse.Namespace) -> None:
    config = get_config()
    store = RunStore(config.data_dir)
    if args.runs_cmd == "latest":
        _print(store.latest() or {})
        return
    runs = store.list_runs(limit=args.limit if args.runs_cmd == "list" else 10)
    _print([
        {
            "id": run.get("id"),
            "scenario_id": run.get("scenario_id"),
            "status": run.get("status"),
            "created_at": run.get("created_at"),
            "completed_at": run.get("completed_at"),
        }
        for run in runs
    ])


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="concord")
    parser.add_argument("--verbose", "-v", action="store_true")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("scenarios")

    run = sub.add_parser("run")
    run.add_argument("--scenario", action="append")
    run.add_argument("--max-rounds", type=int)
    run.add_argument("--output-dir")
    run.add_argument("--verbose", "-v", action="store_true", default=argparse.SUPPRESS)

    quota = sub.add_parser("quota")
    quota.add_argument("--model")

    runs = sub.add_parser("runs")
    runs_sub = runs.add_subparsers(dest="runs_cmd")
    runs_sub.add_parser("latest")
    list_cmd = runs_sub.add_parser("list")
    list_cmd.add_argument("--limit", type=int, default=10)

    return parser


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if getattr(args, "verbose", False) else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    if args.command == "scenarios":
        cmd_scenarios(args)
    elif args.command == "run":
        cmd_run(args)
    elif args.command == "quota":
        cmd_quota(args)
    elif args.command == "runs":
        cmd_runs(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
