from rich.table import Table
from rich.layout import Layout
import threading
from config.settings import ENABLE_STATUS_PANEL, SYMBOL
from typing import List, Optional
import pandas as pd
from models.types import EngineStatus, StrategyStats, StrategyAnalysisResult, MarketRegime
from dataclasses import dataclass
from time import time
from rich.panel import Panel
from rich.text import Text
from datetime import datetime
from utils.logger import setup_logger

logger = setup_logger("ui")

REGIME_STYLES = {
    MarketRegime.TREND: "green",
    MarketRegime.RANGE: "yellow",
    MarketRegime.HIGH_VOLATILITY: "bold red",
}

@dataclass
class UIStatus:
    cycle_running: bool = False
    current_cycle: str | None = None
    last_cycle_ts: float | None = None
    last_summary: str = ""
    total_signals: int = 0
    last_error: str | None = None

class ConsoleUI():
    def __init__(self, console):
        logger.info("ConsoleUI initialized")
        self.console = console
        self.dirty = False
        self.status = UIStatus()
        self.engine = EngineStatus()
        self.ledger: List[StrategyStats] = []
        self.lock = threading.Lock()

        # Initialize Layout ONCE
        self.layout = self._init_layout()

    def _init_layout(self) -> Layout:
        layout = Layout()

        if ENABLE_STATUS_PANEL:
            # Top: strategy results 60%, bottom: ledger + status bar
            layout.split_column(
                Layout(name="table", ratio=6),
                Layout(name="lower_panel", ratio=4)
            )
            layout["lower_panel"].split_column(
                Layout(name="ledger"),
                Layout(name="status", size=3)
            )
        else:
            layout.split_column(
                Layout(name="table", ratio=4),
                Layout(name="status", size=3),
            )
        return layout

    # --- StatusSink ---

    def cycle_started(self, name: str):
        self.status.cycle_running = True
        self.status.current_cycle = name
        self.dirty = True

    def cycle_finished(self, name: str, summary: str = ""):
        self.status.cycle_running = False
        self.status.current_cycle = None
        self.status.last_cycle_ts = time()
        self.status.last_summary = summary
        self.status.last_error = None
        self.dirty = True

    def error(self, msg: str):
        self.status.last_error = msg
        self.dirty = True

    # --- Engine updates ---

    def update_engine(self, engine: EngineStatus, ledger: Optional[List[StrategyStats]] = None):
        with self.lock:
            self.engine = engine
            if ledger is not None:
                self.ledger = ledger[:]
        self.dirty = True

    def signal_fired(self, n: int = 1):
        self.status.total_signals += n
        self.dirty = True

    # --- Rendering ---

    def generate_status_panel(self) -> Panel:
        items = []

        if self.status.cycle_running:
            items.append(f"[yellow]Running:[/] {self.status.current_cycle}")
        else:
            items.append("[green]Idle[/]")

        if self.status.last_cycle_ts is None:
            items.append("[yellow]Waiting for first cycle[/]")
        else:
            ts_str = datetime.fromtimestamp(self.status.last_cycle_ts).strftime("%H:%M:%S")
            items.append(f"[cyan]Last cycle:[/] {ts_str} {self.status.last_summary}")

        with self.lock:
            engine = self.engine

        if engine.regime:
            style = REGIME_STYLES.get(engine.regime.regime, "white")
            items.append(
                f"[{style}]{engine.regime.regime.display_name}[/] ({engine.regime.confidence_percent})"
            )

        items.append(f"[blue]Patterns cached:[/] {engine.pattern_cache_size}")
        items.append(f"[magenta]Signals:[/] {self.status.total_signals}")

        if self.status.last_error:
            items.append(f"[red]Error:[/] {self.status.last_error}")

        content = "  |  ".join(items)
        return Panel(Text.from_markup(content), title="Status", border_style="blue")

    def generate_table(self) -> Table:
        with self.lock:
            aggregated = self.engine.aggregated

        title = f"{SYMBOL} 15m Strategies"
        if aggregated:
            ts = pd.to_datetime(aggregated.snapshot.timestamp, unit='ms').tz_localize('UTC')
            title = f"{title} @ {ts.strftime('%Y-%m-%d %H:%M')} UTC"

        table = Table(title=title)
        table.add_column("Strategy", style="magenta")
        table.add_column("Samples", justify="right")
        table.add_column("Base %", justify="right")
        table.add_column("Final %", justify="right")
        table.add_column("Boosted %", justify="right")
        table.add_column("Avg Profit %", justify="right")
        table.add_column("Hours", justify="right")
        table.add_column("Weight", justify="right")

        if not aggregated:
            return table

        best_id = aggregated.best.bucket_id if aggregated.best else None
        results: List[StrategyAnalysisResult] = sorted(
            aggregated.strategy_results, key=lambda r: (-r.final_probability, r.bucket_id)
        )
        for r in results:
            name = f"[bold white on blue] {r.bucket_id} [/]" if r.bucket_id == best_id else r.bucket_id
            suppressed = r.evaluation is not None and not r.evaluation.strategy_allowed_in_regime
            final_str = "[dim]suppressed[/]" if suppressed else f"{r.final_probability:.2f}"
            table.add_row(
                name,
                str(r.matched_patterns),
                f"{r.base_probability:.2f}",
                final_str,
                f"{r.boosted_probability:.2f}",
                f"{r.avg_profit_pct:.2f}",
                f"{r.avg_hours_to_max:.1f}",
                f"{r.strategy_weight:.4f}",
            )

        table.caption = (
            f"avg {aggregated.avg_probability:.2f}% | pattern-weighted {aggregated.pattern_weighted_avg_probability:.2f}% "
            f"| {aggregated.strategies_with_data} strategies with data, {aggregated.total_matched_patterns} patterns"
        )
        return table

    def generate_ledger_table(self) -> Table:
        table = Table(title="Strategy Ledger")
        table.add_column("Strategy", style="cyan")
        table.add_column("Total", justify="right")
        table.add_column("Success %", justify="right")
        table.add_column("Weight", justify="right")
        table.add_column("Score", justify="right")
        table.add_column("PnL $", justify="right")

        with self.lock:
            ledger = self.ledger[:]

        for s in ledger:
            weight_style = "red" if s.weight <= 0.05 else ("green" if s.weight >= 0.8 else "white")
            table.add_row(
                s.bucket_id,
                str(s.total_predictions),
                f"{s.success_rate_pct:.2f}",
                f"[{weight_style}]{s.weight:.4f}[/]",
                str(s.score),
                f"{s.total_pnl_usd:.2f}",
            )
        return table

    def generate_layout(self) -> Layout:
        """
        Updates the content of the existing layout tree.
        """
        self.layout["table"].update(self.generate_table())

        if ENABLE_STATUS_PANEL:
            self.layout["lower_panel"]["ledger"].update(self.generate_ledger_table())
            self.layout["lower_panel"]["status"].update(self.generate_status_panel())
        else:
            self.layout["status"].update(self.generate_status_panel())

        return self.layout
