# main.py
import asyncio
import importlib
import sys
import time
from datetime import datetime

import aiohttp
import questionary
from rich.console import Console, Group
from rich.layout import Layout
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from dexarb.config import AppConfig, load_config
from dexarb.execution import ExecutionOrchestrator
from dexarb.gateway import (
    BrowserWalletSigner, HotWalletSigner, HttpBalanceSource, HttpConfirmationChecker,
    HttpSwapBuilder, HttpTxSubmitter, LogNotifier, StaticBalanceSource, TokenRegistry,
    WebhookNotifier,
)
from dexarb.ledger import TradeLedger
from dexarb.logger import setup_console_logger
from dexarb.market_engine import HttpVenueFeed, MarketEngine, QuoteCache
from dexarb.models import Tier, TradeStatus, VenueState
from dexarb.opportunity_engine import (
    find_direct_opportunities, find_triangular_opportunities, fresh_quotes, summarize_opportunities,
)
from dexarb.risk_engine import RiskEngine
from dexarb.session import TradingSession
from dexarb.storage import CsvLedgerStore, YamlSettingsStore

TIER_STYLE = {Tier.GREEN: "green", Tier.YELLOW: "yellow", Tier.RED: "red"}
STATE_STYLE = {VenueState.LIVE: "green", VenueState.STALE: "yellow", VenueState.DEMO: "magenta"}
STATUS_STYLE = {TradeStatus.COMPLETED: "green", TradeStatus.DRY_RUN: "cyan", TradeStatus.FAILED: "red"}

# --- UI HELPER FUNCTIONS ---

async def startup_selection(session: TradingSession) -> None:
    """
    Interactive startup. Live trading moves real funds and needs an explicit
    yes; the persisted auto-trade flag can be flipped before the loop starts.
    """
    s = session.settings
    if not s.dry_run:
        go_live = await questionary.confirm(
            f"LIVE mode: trades of {s.trade_size} with a daily loss limit of {s.daily_loss_limit}. Continue?",
            default=False,
        ).ask_async()
        if not go_live:
            print("Falling back to dry run.")
            session.update_settings(dry_run=True)

    auto = "ON" if session.settings.auto_trade else "OFF"
    if await questionary.confirm(f"Auto-trade is {auto}. Switch it?", default=False).ask_async():
        session.toggle_auto_trade()


def generate_dashboard(statuses, opps, triangular, session: TradingSession):
    """
    Creates the Rich Console Dashboard layout.
    Shows venue health, ranked opportunities, recent trades and the session's P&L.
    """
    # 1. Venue Table
    venue_table = Table(title="📡 Venues")
    venue_table.add_column("Venue", style="cyan")
    venue_table.add_column("State")
    venue_table.add_column("Pairs", justify="right")
    venue_table.add_column("Latency", justify="right")
    for st in statuses:
        latency = f"{st.response_latency_ms:.0f}ms" if st.response_latency_ms is not None else "-"
        venue_table.add_row(st.venue, f"[{STATE_STYLE[st.state]}]{st.state.value}[/]",
                            str(st.quote_count), latency)

    # 2. Opportunity Table (top 10 only, to keep the layout stable)
    opp_table = Table(title="💹 Direct Opportunities")
    opp_table.add_column("Pair", style="cyan")
    opp_table.add_column("Buy -> Sell")
    opp_table.add_column("Spread", justify="right")
    opp_table.add_column("Net", justify="right")
    for o in opps[:10]:
        style = TIER_STYLE[o.tier]
        opp_table.add_row(o.pair_key, f"{o.buy_venue} -> {o.sell_venue}",
                          f"{o.spread_pct:.2f}%", f"[{style}]{o.net_profit:+.2f}[/]")

    tri_table = Table(title="🔺 Triangular (modeled, not executable)")
    tri_table.add_column("Venue")
    tri_table.add_column("Route")
    tri_table.add_column("Profit", justify="right")
    for t in triangular[:5]:
        tri_table.add_row(t.venue, " -> ".join(t.route), f"{t.profit_pct:+.2f}%")

    # 3. Trade history
    history = generate_trade_table(session.ledger.recent(8))
    ledger_stats = session.ledger.stats()
    history_summary = (f"All time: {ledger_stats.total} trades | Win rate {ledger_stats.win_rate_pct:.0f}% | "
                       f"Avg {ledger_stats.avg_profit:+.2f} | Total {ledger_stats.total_profit:+.2f}")

    # 4. Footer
    pnl = session.daily_pnl()
    stats = summarize_opportunities(opps)
    settings = session.settings
    mode = "DRY RUN" if settings.dry_run else "LIVE"
    auto = "AUTO" if settings.auto_trade else "MANUAL"
    status = f"[bold yellow]{session.status.value}[/]" if session.is_busy else session.status.value
    footer = (f"[bold]{mode} | {auto}[/bold] | Status: {status} | "
              f"Today: {pnl.net:+.2f} ({pnl.count} trades) | Best spread: {stats.best_spread_pct:.2f}% | "
              f"{escape(session.last_decision or '-')}")

    layout = Layout()
    layout.split_column(Layout(name="top"), Layout(name="history"), Layout(name="bottom"))
    layout["top"].split_row(
        Layout(Panel(venue_table)),
        Layout(Panel(Group(opp_table, tri_table))),
    )
    layout["history"].update(Panel(Group(history, history_summary)))
    layout["history"].size = 16
    layout["bottom"].update(Panel(footer, style="white on blue"))
    layout["bottom"].size = 3
    return layout


def generate_trade_table(records):
    """Newest first; failed trades show whether funds moved."""
    table = Table(title="📒 Recent Trades")
    table.add_column("Time")
    table.add_column("Pair", style="cyan")
    table.add_column("Buy -> Sell")
    table.add_column("Status")
    table.add_column("Net", justify="right")
    table.add_column("Note")
    for r in records:
        style = STATUS_STYLE.get(r.status, "white")
        table.add_row(f"{datetime.fromtimestamp(r.created_at):%H:%M:%S}", r.pair_key,
                      f"{r.buy_venue} -> {r.sell_venue}", f"[{style}]{r.status.value}[/]",
                      f"{r.net_profit:+.2f}", escape(r.error_message or ""))
    return table

# --- WIRING ---

def build_signer(cfg: AppConfig, http: aiohttp.ClientSession):
    gw = cfg.gateway
    if gw.get("signer", "browser") == "hot":
        # "package.module:function" taking unsigned tx hex and returning signed tx hex
        module_name, _, attr = gw["hot_wallet_signer"].partition(":")
        sign_tx = getattr(importlib.import_module(module_name), attr)
        submitter = HttpTxSubmitter(http, gw["indexer_url"], gw.get("indexer_project_id", ""))
        return HotWalletSigner(sign_tx, submitter)
    return BrowserWalletSigner(http, gw["wallet_bridge_url"])

# --- MAIN CONTROLLER ---

class ArbMonitor:
    def __init__(self, config_path: str = "config.yaml"):
        self.cfg = load_config(config_path)
        system = self.cfg.system
        self.logger = setup_console_logger("dexarb", system.get("log_level", "ERROR"), system.get("log_file"))
        self.refresh_interval = system.get("refresh_interval_seconds", 15)

        feeds = [HttpVenueFeed(name, v["url"], self.cfg.base_symbol) for name, v in self.cfg.venues.items()]
        self.market = MarketEngine(feeds, QuoteCache(self.cfg.cache), self.logger)
        self.ledger_store = CsvLedgerStore(system.get("ledger_file", "data/trades.csv"), self.logger)
        self.settings_store = YamlSettingsStore(system.get("settings_file", "data/settings.yaml"),
                                                self.cfg.trade_settings)
        self.http = None
        self.session = None

    async def _build_session(self) -> TradingSession:
        gw = self.cfg.gateway
        registry = TokenRegistry(self.cfg.tokens)
        base = registry.info(self.cfg.base_symbol)
        project_id = gw.get("indexer_project_id", "")
        wallet = gw.get("wallet_address", "")

        orchestrator = ExecutionOrchestrator(
            builder=HttpSwapBuilder(self.http, gw["aggregator_url"], wallet, registry, gw.get("partner_id", "")),
            signer=build_signer(self.cfg, self.http),
            checker=HttpConfirmationChecker(self.http, gw["indexer_url"], project_id, base.decimals),
            timings=self.cfg.timings,
            logger=self.logger,
        )
        if wallet:
            balance = HttpBalanceSource(self.http, gw["indexer_url"], project_id, wallet, base.unit, base.decimals)
        else:
            balance = StaticBalanceSource(gw.get("paper_balance", 1000.0))
        notifier = WebhookNotifier(self.http, gw["webhook_url"]) if gw.get("webhook_url") else LogNotifier(self.logger)

        ledger = await TradeLedger(self.ledger_store, self.logger).open()
        return TradingSession(orchestrator, RiskEngine(self.cfg.risk, self.logger), ledger,
                              self.settings_store, balance, notifier, self.logger)

    async def run(self):
        try:
            print("Initializing...")
            self.http = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
            await self.market.initialize()
            await self.ledger_store.start()
            self.session = await self._build_session()
            await startup_selection(self.session)

            console = Console()
            with Live(console=console, refresh_per_second=2) as live:
                while True:
                    start_tick = time.time()
                    quotes, statuses = await self.market.fetch_all_quotes()
                    quotes = fresh_quotes(quotes, self.cfg.risk.max_quote_age_seconds)
                    settings = self.session.settings

                    opps = find_direct_opportunities(quotes, settings.trade_size, settings.min_spread_pct,
                                                     self.cfg.fees, self.cfg.tiers)
                    triangular = find_triangular_opportunities(quotes, settings.trade_size, self.cfg.base_symbol,
                                                               self.cfg.fees, self.cfg.triangular)
                    live.update(generate_dashboard(statuses, opps, triangular, self.session))

                    await self.session.auto_trade_cycle(opps)
                    live.update(generate_dashboard(statuses, opps, triangular, self.session))

                    elapsed = time.time() - start_tick
                    await asyncio.sleep(max(0, self.refresh_interval - elapsed))
        finally:
            print("Shutting down resources...")
            if self.session is not None:
                self.session.kill_switch()
            await self.ledger_store.close()
            await self.market.shutdown()
            if self.http is not None:
                await self.http.close()


if __name__ == "__main__":
    config_path = sys.argv[1] if len(sys.argv) > 1 else "config.yaml"
    try:
        bot = ArbMonitor(config_path)
        try:
            import uvloop
            asyncio.set_event_loop_policy(uvloop.EventLoopPolicy())
        except ImportError:
            pass
        asyncio.run(bot.run())
    except KeyboardInterrupt:
        print(f"\n🛑 Stopped by user at {datetime.now():%H:%M:%S}.")
        sys.exit()
