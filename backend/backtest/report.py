"""Report formatting for replay results.

Outputs results to console (formatted tables) and JSON files.
"""

from __future__ import annotations

from dataclasses import asdict

import orjson

from backtest.stats import ReplaySummary


class ReportFormatter:
    """Format replay results for display and export."""

    @staticmethod
    def print_console(result: ReplaySummary) -> None:
        """Print formatted report to console."""
        print("\n" + "=" * 70)
        print(f"  REPLAY RESULTS: {result.portfolio_id}")
        print("=" * 70)
        print(f"  Period: {result.start_date:%Y-%m-%d %H:%M} → {result.end_date:%Y-%m-%d %H:%M}")
        print(f"  Symbols: {', '.join(result.symbols)}")
        print(f"  Ticks: {result.ticks}")

        print("\n" + "-" * 70)
        print("  OVERALL")
        print("-" * 70)
        print(f"  Trades:         {result.total_trades}")
        print(f"  Wins:           {result.wins}")
        print(f"  Losses:         {result.losses}")
        print(f"  Win rate:       {result.win_rate:.1f}%")
        print(f"  Net P&L:        {result.net_pnl:,.2f}")
        print(f"  Start equity:   {result.starting_equity:,.2f}")
        print(f"  Final equity:   {result.final_equity:,.2f} ({result.return_pct:+.2f}%)")
        print(f"  Max drawdown:   {result.max_drawdown:,.2f} ({result.max_drawdown_pct:.2f}%)")
        print(f"  Open positions: {result.open_positions}")

        if result.exits_by_reason:
            print("\n" + "-" * 70)
            print("  EXITS BY REASON")
            print("-" * 70)
            for reason, count in sorted(result.exits_by_reason.items()):
                print(f"  {reason:<12} {count:>6}")

        if result.decisions_by_stage:
            print("\n" + "-" * 70)
            print("  DECISIONS BY STAGE")
            print("-" * 70)
            for stage, count in sorted(result.decisions_by_stage.items()):
                print(f"  {stage:<22} {count:>8}")

        print("=" * 70 + "\n")

    @staticmethod
    def to_json(result: ReplaySummary) -> bytes:
        data = asdict(result)
        data["win_rate"] = result.win_rate
        data["return_pct"] = result.return_pct
        return orjson.dumps(data, default=str, option=orjson.OPT_INDENT_2)

    @staticmethod
    def save_json(result: ReplaySummary, path: str) -> None:
        """Save results as JSON."""
        with open(path, "wb") as f:
            f.write(ReportFormatter.to_json(result))
        print(f"Results saved to {path}")
