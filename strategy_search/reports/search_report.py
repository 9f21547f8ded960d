from __future__ import annotations

from pathlib import Path
from typing import Any

from strategy_search.engine.scoring import search_fitness
from strategy_search.engine.types import OptimizationResult
from strategy_search.strategies.theory import theory_id


def _fmt_pct(x: float) -> str:
    return f"{100.0 * float(x):.2f}%"


def write_search_report(
    run_dir: Path,
    run_summary: dict[str, Any],
    results: list[OptimizationResult],
    base_equity: float = 10_000.0,
    top_n: int = 10,
) -> Path:
    run_dir.mkdir(parents=True, exist_ok=True)
    path = run_dir / "report.md"

    lines: list[str] = []
    lines.append("# Strategy Search Report")
    lines.append("")
    lines.append("## Run Summary")
    for key in ("run_id", "symbols", "start", "end", "theories", "seed", "population_size", "generations"):
        if key in run_summary:
            lines.append(f"- {key}: `{run_summary[key]}`")
    lines.append(f"- optimized: `{len(results)}`")
    lines.append("")

    lines.append("## Leaderboard")
    if not results:
        lines.append("No theory passed the promising filter.")
    else:
        lines.append(
            "| rank | theory | id | search_fitness | final_equity | sharpe | max_dd | win_rate | profit_factor | trades | valid |"
        )
        lines.append("|---:|---|---|---:|---:|---:|---:|---:|---:|---:|---|")
        for rank, opt in enumerate(results[:top_n], start=1):
            r = opt.backtest_result
            if r is None:
                continue
            valid = bool(r.validation.get("is_valid", False))
            lines.append(
                f"| {rank} | {opt.best_theory.name} | `{theory_id(opt.best_theory)}` "
                f"| {search_fitness(r, base_equity):.4f} | {r.final_equity:,.2f} | {r.sharpe_ratio:.2f} "
                f"| {_fmt_pct(r.max_drawdown)} | {_fmt_pct(r.win_rate)} | {r.profit_factor:.2f} "
                f"| {r.total_trades} | {'yes' if valid else 'no'} |"
            )
    lines.append("")

    for opt in results[:top_n]:
        theory = opt.best_theory
        lines.append(f"### {theory.name}")
        lines.append(f"- entry: `{theory.entry_signal.expression}`")
        lines.append(f"- exit: `{theory.exit_signal.expression}`")
        for ind in theory.indicators:
            params = ", ".join(f"{k}={v:.4g}" for k, v in sorted(ind.parameters.items()))
            lines.append(f"- {ind.name} ({ind.type.value}): {params}")
        lines.append(
            f"- fitness: {opt.initial_fitness:.4f} -> {opt.final_fitness:.4f} "
            f"({opt.improvement_percentage:+.1f}%) in {opt.optimization_seconds:.1f}s"
        )
        if opt.backtest_result is not None:
            messages = opt.backtest_result.validation.get("messages", {})
            for msg in messages.values():
                lines.append(f"- gate: {msg}")
        for note in opt.notes:
            lines.append(f"- note: {note}")
        if opt.generation_results:
            lines.append("")
            lines.append("| generation | best | generation_best | average | worst |")
            lines.append("|---:|---:|---:|---:|---:|")
            for g in opt.generation_results:
                lines.append(
                    f"| {g.generation} | {g.best_fitness:.4f} | {g.generation_best_fitness:.4f} "
                    f"| {g.average_fitness:.4f} | {g.worst_fitness:.4f} |"
                )
        lines.append("")

    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path
