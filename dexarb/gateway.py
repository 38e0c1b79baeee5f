# dexarb/gateway.py
"""
Contracts for the external collaborators of the core, plus thin HTTP adapters.

The orchestrator only ever talks to the abstract classes. Adapters translate
transport failures into the LegError family so the orchestrator can classify
them.
"""
import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import aiohttp

from .config import TokenInfo
from .errors import (
    ConfirmationError, SigningError, SubmissionError, SwapBuildError,
)
from .models import Quote, TradeRecord, VenueStatus

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)


@dataclass(frozen=True, slots=True)
class SwapBuild:
    unsigned_tx: str
    estimated_output: Optional[float] = None  # in units of the bought asset
    price_impact: Optional[float] = None


@dataclass(frozen=True, slots=True)
class Confirmation:
    confirmed: bool
    fee_paid: Optional[float] = None  # in base-asset units
    block: Optional[str] = None


class QuoteSource(ABC):
    @abstractmethod
    async def fetch_all_quotes(self) -> Tuple[List[Quote], List[VenueStatus]]:
        """Whatever succeeded, with a per-venue status. Never fails as a whole."""


class SwapBuilder(ABC):
    @abstractmethod
    async def build_swap(self, from_symbol: str, to_symbol: str, amount: float,
                         max_slippage_pct: float, venue_hint: Optional[str] = None) -> SwapBuild:
        ...


class Signer(ABC):
    """
    One signing capability per session. Implementations own the broadcast:
    the returned value is the transaction reference of a submitted transaction.
    """
    @abstractmethod
    async def sign_and_submit(self, unsigned_tx: str) -> str:
        ...


class ConfirmationChecker(ABC):
    @abstractmethod
    async def check_confirmed(self, tx_ref: str) -> Confirmation:
        ...


class NotificationSink(ABC):
    """Best-effort. Callers must not let a failing sink affect a trade."""
    @abstractmethod
    async def notify(self, record: TradeRecord) -> None:
        ...


class BalanceSource(ABC):
    @abstractmethod
    async def get_balance(self) -> float:
        """Spendable base-asset balance of the trading wallet."""


# --- UNIT CONVERSION ---

class TokenRegistry:
    """Maps symbols to on-chain units and converts between display and smallest units."""
    def __init__(self, tokens: Dict[str, TokenInfo]):
        self.tokens = tokens

    def info(self, symbol: str) -> TokenInfo:
        try:
            return self.tokens[symbol]
        except KeyError:
            raise SwapBuildError(f"Unknown token: {symbol}") from None

    def to_smallest(self, symbol: str, amount: float) -> int:
        return int(amount * 10 ** self.info(symbol).decimals)

    def from_smallest(self, symbol: str, quantity) -> float:
        return float(quantity) / 10 ** self.info(symbol).decimals


# --- SWAP BUILDING ---

class HttpSwapBuilder(SwapBuilder):
    """Requests an unsigned swap transaction from an aggregator build endpoint."""
    def __init__(self, session: aiohttp.ClientSession, base_url: str, wallet_address: str,
                 registry: TokenRegistry, partner_id: str = ""):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.wallet_address = wallet_address
        self.registry = registry
        self.partner_id = partner_id

    async def build_swap(self, from_symbol, to_symbol, amount, max_slippage_pct, venue_hint=None):
        sell_unit = self.registry.info(from_symbol).unit
        buy_unit = self.registry.info(to_symbol).unit
        body = {
            "buyer_address": self.wallet_address,
            "token_in": "" if sell_unit == "lovelace" else sell_unit,
            "token_out": "" if buy_unit == "lovelace" else buy_unit,
            "amount_in": self.registry.to_smallest(from_symbol, amount),
            "slippage": max_slippage_pct,
        }
        if venue_hint:
            body["dex"] = venue_hint.lower()
        headers = {"X-Partner-Id": self.partner_id} if self.partner_id else {}

        try:
            async with self.session.post(f"{self.base_url}/swap/build", json=body, headers=headers) as resp:
                if resp.status != 200:
                    raise SwapBuildError(f"aggregator returned HTTP {resp.status}: {(await resp.text())[:200]}")
                data = await resp.json()
        except TRANSPORT_ERRORS as e:
            raise SwapBuildError(f"aggregator unreachable: {e}") from e

        tx = data.get("cbor") or data.get("tx") or data.get("transaction")
        if not tx:
            raise SwapBuildError("aggregator response carried no transaction")

        raw_output = data.get("estimated_output", data.get("estimatedOutput"))
        return SwapBuild(
            unsigned_tx=tx,
            estimated_output=self.registry.from_smallest(to_symbol, raw_output) if raw_output is not None else None,
            price_impact=data.get("price_impact", data.get("priceImpact")),
        )


# --- SIGNING ---

class HttpTxSubmitter:
    """Broadcasts a signed transaction through a ledger indexer's submit endpoint."""
    def __init__(self, session: aiohttp.ClientSession, base_url: str, project_id: str):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.project_id = project_id

    async def submit(self, signed_tx: str) -> str:
        headers = {"Content-Type": "application/cbor", "project_id": self.project_id}
        try:
            payload = bytes.fromhex(signed_tx)
        except ValueError as e:
            raise SubmissionError(f"signed transaction is not hex: {e}") from e
        try:
            async with self.session.post(f"{self.base_url}/tx/submit", data=payload, headers=headers) as resp:
                text = await resp.text()
                if resp.status != 200:
                    raise SubmissionError(f"submit rejected (HTTP {resp.status}): {text[:200]}")
        except TRANSPORT_ERRORS as e:
            raise SubmissionError(f"submit endpoint unreachable: {e}") from e
        return text.strip().strip('"')


class BrowserWalletSigner(Signer):
    """
    Delegates to a browser wallet through a local bridge that exposes the
    wallet's sign and submit calls over HTTP. The wallet broadcasts itself.
    """
    def __init__(self, session: aiohttp.ClientSession, bridge_url: str):
        self.session = session
        self.bridge_url = bridge_url.rstrip('/')

    async def _call(self, path: str, payload: dict, error_cls):
        try:
            async with self.session.post(f"{self.bridge_url}/{path}", json=payload) as resp:
                if resp.status != 200:
                    raise error_cls(f"wallet bridge {path} failed (HTTP {resp.status}): {(await resp.text())[:200]}")
                return await resp.json()
        except TRANSPORT_ERRORS as e:
            raise error_cls(f"wallet bridge unreachable: {e}") from e

    async def sign_and_submit(self, unsigned_tx: str) -> str:
        signed = await self._call("sign", {"tx": unsigned_tx, "partial": True}, SigningError)
        signed_tx = signed.get("signedTx") or signed.get("tx")
        if not signed_tx:
            raise SigningError("wallet returned no signed transaction (user rejected?)")

        submitted = await self._call("submit", {"tx": signed_tx}, SubmissionError)
        tx_ref = submitted.get("txHash")
        if not tx_ref:
            raise SubmissionError("wallet returned no transaction hash")
        return tx_ref


class HotWalletSigner(Signer):
    """Server-held key: signs with an injected callable, broadcasts via the indexer."""
    def __init__(self, sign_tx: Callable[[str], str], submitter: HttpTxSubmitter):
        self.sign_tx = sign_tx
        self.submitter = submitter

    async def sign_and_submit(self, unsigned_tx: str) -> str:
        try:
            signed_tx = self.sign_tx(unsigned_tx)
        except Exception as e:
            raise SigningError(f"hot wallet could not sign: {e}") from e
        return await self.submitter.submit(signed_tx)


# --- CONFIRMATION & BALANCE ---

class HttpConfirmationChecker(ConfirmationChecker):
    """
    Looks a transaction up on the indexer. 404 means not yet in a block.
    Fees are reported in the base asset's smallest unit.
    """
    def __init__(self, session: aiohttp.ClientSession, base_url: str, project_id: str,
                 base_decimals: int = 6):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.project_id = project_id
        self.base_decimals = base_decimals

    async def check_confirmed(self, tx_ref: str) -> Confirmation:
        try:
            async with self.session.get(f"{self.base_url}/txs/{tx_ref}",
                                        headers={"project_id": self.project_id}) as resp:
                if resp.status == 404:
                    return Confirmation(confirmed=False)
                if resp.status != 200:
                    raise ConfirmationError(f"status lookup failed (HTTP {resp.status})")
                data = await resp.json()
        except TRANSPORT_ERRORS as e:
            raise ConfirmationError(f"indexer unreachable: {e}") from e

        fees = data.get("fees")
        return Confirmation(
            confirmed=True,
            fee_paid=float(fees) / 10 ** self.base_decimals if fees is not None else None,
            block=data.get("block"),
        )


class HttpBalanceSource(BalanceSource):
    def __init__(self, session: aiohttp.ClientSession, base_url: str, project_id: str,
                 address: str, base_unit: str = "lovelace", base_decimals: int = 6):
        self.session = session
        self.base_url = base_url.rstrip('/')
        self.project_id = project_id
        self.address = address
        self.base_unit = base_unit
        self.base_decimals = base_decimals

    async def get_balance(self) -> float:
        async with self.session.get(f"{self.base_url}/addresses/{self.address}",
                                    headers={"project_id": self.project_id}) as resp:
            resp.raise_for_status()
            data = await resp.json()
        for entry in data.get("amount", []):
            if entry.get("unit") == self.base_unit:
                return float(entry["quantity"]) / 10 ** self.base_decimals
        return 0.0


class StaticBalanceSource(BalanceSource):
    """Fixed balance, used for dry runs."""
    def __init__(self, balance: float):
        self.balance = balance

    async def get_balance(self) -> float:
        return self.balance


# --- NOTIFICATIONS ---

def describe_trade(record: TradeRecord) -> str:
    mode = "DRY RUN" if record.dry_run else "LIVE"
    sign = "+" if record.net_profit > 0 else ""
    text = (f"{record.pair_key} {record.buy_venue} -> {record.sell_venue}: "
            f"{sign}{record.net_profit:.2f} ({record.status.value}, {mode})")
    if record.error_message:
        text += f" | {record.error_message}"
    return text


class LogNotifier(NotificationSink):
    def __init__(self, logger: Optional[logging.Logger] = None):
        self.logger = logger or logging.getLogger(__name__)

    async def notify(self, record: TradeRecord) -> None:
        icon = "✅" if record.net_profit > 0 else "❌"
        self.logger.info(f"{icon} {describe_trade(record)}")


class WebhookNotifier(NotificationSink):
    """Posts a one-line summary to a chat webhook."""
    def __init__(self, session: aiohttp.ClientSession, webhook_url: str):
        self.session = session
        self.webhook_url = webhook_url

    async def notify(self, record: TradeRecord) -> None:
        async with self.session.post(self.webhook_url, json={"content": describe_trade(record)}) as resp:
            resp.raise_for_status()
