#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import math
import time
import asyncio
import secrets
from decimal import Decimal, InvalidOperation
from typing import Dict, List, Optional, Any, Callable, Set
from datetime import datetime
from enum import Enum
import pytz

from .config import ModuleConfig
from .errors import ConfigurationError, DegradedLookupError, NotInitializedError, TransientNetworkError
from .models import ClassifiedWallet, MonitoredWallet, SellAlert, Transaction, WalletType, WalletUpdate
from .utils import trace

# Falhas de consulta tratadas como "sem dado" dentro de um ciclo
LOOKUP_ERRORS = (asyncio.TimeoutError, TransientNetworkError, DegradedLookupError)

# ==============================================
# Módulo: Pressão de Venda
# ==============================================

def calculate_sell_pressure(address: str, transactions: List[Transaction],
                            now: Optional[float] = None, lookback_seconds: int = 86400) -> float:
    """Volume de saída / (saída + entrada) na janela; 0.0 sem movimento"""
    now = now if now is not None else time.time()
    recent = [tx for tx in transactions if now - tx.timestamp < lookback_seconds]

    sell_volume = sum(tx.value for tx in recent if tx.is_outgoing(address))
    buy_volume = sum(tx.value for tx in recent if tx.is_incoming(address) and not tx.is_outgoing(address))

    total = sell_volume + buy_volume
    return sell_volume / total if total > 0 else 0.0

# ==============================================
# Módulo: Monitor em Tempo Real
# ==============================================

class MonitorState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZED = "initialized"
    MONITORING = "monitoring"
    STOPPED = "stopped"


class RealTimeMonitor:
    """Monitora saldos das carteiras sinalizadas e emite alertas de venda.

    Um único ciclo de polling percorre as carteiras em lotes: dentro do
    lote as consultas são concorrentes, entre lotes há uma pausa. O ciclo
    seguinte só é agendado depois que o anterior termina, e cada carteira
    tem um lock próprio para as atualizações de estado.
    """

    def __init__(self, analyzer, dex, alert_system=None, config: Optional[ModuleConfig] = None):
        self.analyzer = analyzer
        self.dex = dex
        self.alert_system = alert_system
        self.config = config or ModuleConfig()
        self.settings = self.config.monitor

        self.state = MonitorState.UNINITIALIZED
        self.token_address: Optional[str] = None
        self.network: Optional[str] = None
        self.monitored_wallets: Dict[str, MonitoredWallet] = {}
        self._wallet_locks: Dict[str, asyncio.Lock] = {}

        # Dicionários usados como conjuntos ordenados de callbacks
        self._alert_subscribers: Dict[Callable, None] = {}
        self._update_subscribers: Dict[Callable, None] = {}

        self._stop_event: Optional[asyncio.Event] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._mempool_task: Optional[asyncio.Task] = None
        self.background_tasks: Set[asyncio.Task] = set()

        self.connected = False
        self.cycle_count = 0
        self.last_cycle_at: Optional[datetime] = None
        self._recent_sells: Dict[str, float] = {}
        self._notified_groups: Set[frozenset] = set()

    # ------------------------------------------
    # Ciclo de vida
    # ------------------------------------------

    @property
    def is_monitoring(self) -> bool:
        return self.state == MonitorState.MONITORING

    @staticmethod
    def _wallet_fields(wallet: Any) -> Optional[Dict]:
        """Extrai endereço, tipo e percentual de um ClassifiedWallet ou dicionário"""
        if isinstance(wallet, ClassifiedWallet):
            return {
                'address': wallet.address,
                'wallet_type': wallet.wallet_type,
                'percentage': wallet.percentage
            }
        if isinstance(wallet, dict) and wallet.get('address'):
            raw_type = wallet.get('type', wallet.get('wallet_type', WalletType.UNKNOWN))
            try:
                wallet_type = WalletType(getattr(raw_type, 'value', raw_type))
            except ValueError:
                wallet_type = WalletType.UNKNOWN
            return {
                'address': wallet['address'],
                'wallet_type': wallet_type,
                'percentage': float(wallet.get('percentage') or 0.0)
            }
        return None

    def initialize(self, token_address: str, network: str, wallets: List[Any]) -> bool:
        """Define o token, a rede e o conjunto de carteiras monitoradas"""
        if not isinstance(wallets, (list, tuple)):
            raise ConfigurationError("wallets must be a list")
        if not token_address or not isinstance(token_address, str):
            raise ConfigurationError("token_address is required")
        self.config.get_network(network)

        self.token_address = token_address.lower()
        self.network = network
        self.monitored_wallets.clear()
        self._wallet_locks.clear()
        self._recent_sells.clear()
        self._notified_groups.clear()

        for wallet in wallets:
            fields = self._wallet_fields(wallet)
            if fields is None:
                trace.log_event("MONITOR_INIT", "WARNING", {
                    "error": "invalid wallet entry skipped",
                    "wallet": str(wallet)[:100]
                })
                continue
            address = fields['address'].lower()
            self.monitored_wallets[address] = MonitoredWallet(
                address=address,
                wallet_type=fields['wallet_type'],
                token_address=self.token_address,
                network=network,
                percentage=fields['percentage']
            )
            self._wallet_locks[address] = asyncio.Lock()

        if self.state != MonitorState.MONITORING:
            self.state = MonitorState.INITIALIZED

        trace.log_event("MONITOR_INIT", "SUCCESS", {
            "token": self.token_address,
            "network": network,
            "wallets": len(self.monitored_wallets)
        })
        return True

    async def start_monitoring(self) -> bool:
        """Agenda o ciclo de polling e retorna imediatamente.

        Retorna ``False`` quando não há carteiras para monitorar.
        """
        if self.state == MonitorState.UNINITIALIZED or self.token_address is None:
            raise NotInitializedError("Monitor not initialized. Call initialize() first.")

        if self.is_monitoring:
            return True

        if not self.monitored_wallets:
            trace.log_event("MONITOR_START", "WARNING", {
                "token": self.token_address,
                "error": "no wallets to monitor"
            })
            return False

        self._stop_event = asyncio.Event()
        self.state = MonitorState.MONITORING
        self._poll_task = self._track(asyncio.create_task(self._poll_loop(self._stop_event)))

        if self.settings.mempool_enabled:
            self._start_mempool_watch(self._stop_event)

        trace.log_event("MONITOR_START", "SUCCESS", {
            "token": self.token_address,
            "network": self.network,
            "wallets": len(self.monitored_wallets),
            "poll_interval": self.settings.poll_interval
        })
        return True

    def stop_monitoring(self):
        """Cancela o agendamento; o lote em andamento termina normalmente"""
        if self._stop_event is not None:
            self._stop_event.set()
        self._poll_task = None
        self._mempool_task = None

        if self.state == MonitorState.UNINITIALIZED:
            return

        was_monitoring = self.is_monitoring
        self.monitored_wallets.clear()
        self._wallet_locks.clear()
        self._recent_sells.clear()
        self._notified_groups.clear()
        self.connected = False
        self.state = MonitorState.STOPPED

        if was_monitoring:
            trace.log_event("MONITOR_STOP", "SUCCESS", {
                "token": self.token_address,
                "network": self.network
            })

    async def shutdown(self):
        """Para o monitor e aguarda tarefas e entregas pendentes"""
        self.stop_monitoring()
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)
        if self.alert_system is not None:
            await self.alert_system.drain()

    def _track(self, task: asyncio.Task) -> asyncio.Task:
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def _poll_loop(self, stop_event: asyncio.Event):
        while not stop_event.is_set():
            try:
                await self.check_all_wallets(stop_event)
            except Exception as e:
                self.connected = False
                trace.log_event("POLL_CYCLE", "ERROR", {
                    "token": self.token_address,
                    "error": str(e)
                })

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.settings.poll_interval)
            except asyncio.TimeoutError:
                pass

    # ------------------------------------------
    # Ciclo de verificação
    # ------------------------------------------

    def _lock_for(self, address: str) -> asyncio.Lock:
        lock = self._wallet_locks.get(address)
        if lock is None:
            lock = self._wallet_locks.setdefault(address, asyncio.Lock())
        return lock

    async def _safe_check(self, wallet: MonitoredWallet) -> str:
        try:
            return 'checked' if await self.check_wallet_changes(wallet) else 'skipped'
        except Exception as e:
            trace.log_event("WALLET_CHECK", "ERROR", {
                "wallet": wallet.address,
                "network": wallet.network,
                "error": str(e)
            })
            return 'failed'

    async def check_all_wallets(self, stop_event: Optional[asyncio.Event] = None) -> Dict[str, int]:
        """Executa um ciclo completo em lotes escalonados"""
        stop_event = stop_event or self._stop_event
        wallets = list(self.monitored_wallets.values())
        batch_size = max(1, self.settings.batch_size)
        counts = {'checked': 0, 'skipped': 0, 'failed': 0}

        for start in range(0, len(wallets), batch_size):
            if start > 0 and stop_event is not None and stop_event.is_set():
                break

            batch = wallets[start:start + batch_size]
            for outcome in await asyncio.gather(*(self._safe_check(w) for w in batch)):
                counts[outcome] += 1

            if start + batch_size < len(wallets) and self.settings.batch_delay > 0:
                if stop_event is None:
                    await asyncio.sleep(self.settings.batch_delay)
                else:
                    try:
                        await asyncio.wait_for(stop_event.wait(), timeout=self.settings.batch_delay)
                    except asyncio.TimeoutError:
                        pass

        # Ciclo de uma sessão encerrada não altera o estado da sessão atual
        if stop_event is not None and stop_event.is_set():
            trace.log_event("POLL_CYCLE", "INFO", {
                "token": self.token_address,
                "stopped": True,
                **counts
            })
            return counts

        self.cycle_count += 1
        self.last_cycle_at = datetime.now(pytz.utc)
        self.connected = counts['checked'] > 0 or not wallets

        self.check_coordinated_activity()

        trace.log_event("POLL_CYCLE", "SUCCESS" if self.connected else "WARNING", {
            "token": self.token_address,
            "cycle": self.cycle_count,
            **counts
        })
        return counts

    async def _fetch_balance(self, wallet: MonitoredWallet) -> Optional[float]:
        try:
            balance = await asyncio.wait_for(
                self.analyzer.get_token_balance(wallet.address, wallet.token_address, wallet.network),
                timeout=self.settings.request_timeout
            )
        except LOOKUP_ERRORS as e:
            trace.log_event("BALANCE_FETCH", "WARNING", {
                "wallet": wallet.address,
                "network": wallet.network,
                "error": str(e) or type(e).__name__
            })
            return None

        if balance is None:
            return None
        try:
            value = float(balance)
        except (TypeError, ValueError):
            return None
        return value if math.isfinite(value) else None

    async def _fetch_price(self, wallet: MonitoredWallet) -> float:
        """Preço em USD; 0.0 quando a consulta falha"""
        try:
            price = await asyncio.wait_for(
                self.dex.get_token_price(wallet.token_address, wallet.network),
                timeout=self.settings.request_timeout
            )
            return float(price or 0.0)
        except Exception as e:
            trace.log_event("PRICE_FETCH", "WARNING", {
                "token": wallet.token_address,
                "network": wallet.network,
                "error": str(e) or type(e).__name__
            })
            return 0.0

    async def _fetch_transfers(self, wallet: MonitoredWallet, limit: int = 20) -> List[Transaction]:
        try:
            return await asyncio.wait_for(
                self.analyzer.get_token_transfers(
                    wallet.address, wallet.network, contract_address=wallet.token_address, limit=limit
                ),
                timeout=self.settings.request_timeout
            ) or []
        except Exception as e:
            trace.log_event("TX_HISTORY_FETCH", "WARNING", {
                "wallet": wallet.address,
                "network": wallet.network,
                "error": str(e) or type(e).__name__
            })
            return []

    @staticmethod
    def _as_decimal(value: float) -> Decimal:
        """Valor decimal curto do float (0.297 e não 0.29699999...)"""
        try:
            return Decimal(str(value))
        except InvalidOperation:
            return Decimal(0)

    async def check_wallet_changes(self, wallet: MonitoredWallet) -> bool:
        """Verifica uma carteira; retorna ``False`` se não houve leitura utilizável"""
        async with self._lock_for(wallet.address):
            current_balance = await self._fetch_balance(wallet)
            if current_balance is None:
                return False

            now = datetime.now(pytz.utc)
            previous_balance = wallet.last_balance

            # Primeira leitura: apenas registra a linha de base
            if previous_balance is None:
                wallet.last_balance = current_balance
                wallet.last_checked = now
                await self._emit_wallet_update(wallet, current_balance, None, now)
                return True

            # Comparação em Decimal: o limite é exclusivo para qualquer escala de saldo
            previous_exact = self._as_decimal(previous_balance)
            delta = previous_exact - self._as_decimal(current_balance)
            change_percent = delta / previous_exact * 100 if previous_exact > 0 else Decimal(0)

            if delta > 0 and change_percent > self._as_decimal(self.settings.sell_threshold_percent):
                await self.handle_sell_detected(wallet, float(delta), current_balance, change_percent)

            wallet.last_balance = current_balance
            wallet.last_checked = now
            await self._emit_wallet_update(wallet, current_balance, previous_balance, now)
            return True

    # ------------------------------------------
    # Vendas
    # ------------------------------------------

    @staticmethod
    def _new_alert_id() -> str:
        return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"

    def _explorer_link(self, network: str, tx_hash: str) -> Optional[str]:
        network_config = self.config.networks.get(network)
        if network_config is None or not network_config.explorer_url:
            return None
        return f"{network_config.explorer_url}/tx/{tx_hash}"

    async def _find_sell_transaction(self, wallet: MonitoredWallet) -> Optional[Transaction]:
        """Transferência de saída mais recente dentro da janela configurada"""
        if self.settings.sell_tx_lookback_seconds <= 0:
            return None

        cutoff = time.time() - self.settings.sell_tx_lookback_seconds
        outgoing = [
            tx for tx in await self._fetch_transfers(wallet)
            if tx.is_outgoing(wallet.address) and tx.timestamp >= cutoff
        ]
        if not outgoing:
            return None
        return max(outgoing, key=lambda tx: tx.timestamp)

    async def handle_sell_detected(self, wallet: MonitoredWallet, amount_sold: float, new_balance: float,
                                   change_percent: Optional[Decimal] = None) -> SellAlert:
        """Monta o alerta com o saldo anterior ainda intacto e o distribui"""
        previous_balance = wallet.last_balance
        price = await self._fetch_price(wallet)
        usd_value = amount_sold * price if price > 0 else 0.0
        sell_tx = await self._find_sell_transaction(wallet)

        now = datetime.now(pytz.utc)
        wallet.alert_count += 1
        wallet.total_volume_sold += usd_value
        wallet.is_active = True
        wallet.last_activity = now
        self._recent_sells[wallet.address] = time.time()

        if change_percent is None:
            change_percent = amount_sold / previous_balance * 100 if previous_balance else 0.0
        alert = SellAlert(
            id=self._new_alert_id(),
            wallet_address=wallet.address,
            wallet_type=wallet.wallet_type,
            token_address=wallet.token_address,
            network=wallet.network,
            amount_sold=amount_sold,
            usd_value=usd_value,
            previous_balance=previous_balance,
            new_balance=new_balance,
            change_percentage=f"{change_percent:.2f}",
            timestamp=now,
            alert_count=wallet.alert_count,
            total_volume_sold=wallet.total_volume_sold,
            destination_venue=self.dex.identify_venue(sell_tx.to_address, wallet.network) if sell_tx else None,
            transaction_hash=sell_tx.hash if sell_tx else None,
            explorer_link=self._explorer_link(wallet.network, sell_tx.hash) if sell_tx else None
        )

        trace.log_event("SELL_DETECTED", "WARNING", {
            "alert_id": alert.id,
            "wallet": wallet.address,
            "type": wallet.wallet_type.value,
            "amount_sold": amount_sold,
            "usd_value": usd_value,
            "change_percentage": alert.change_percentage
        })

        self._notify(self._alert_subscribers, alert, "ALERT_SUBSCRIBER")

        if self.alert_system is not None:
            try:
                self.alert_system.dispatch(alert)
            except Exception as e:
                trace.log_event("ALERT_DISPATCH", "ERROR", {
                    "alert_id": alert.id,
                    "error": str(e)
                })

        return alert

    def check_coordinated_activity(self) -> Optional[List[str]]:
        """Sinaliza uma vez cada grupo de carteiras que vendeu na mesma janela"""
        now = time.time()
        window = self.settings.coordinated_window_seconds
        self._recent_sells = {
            address: ts for address, ts in self._recent_sells.items()
            if now - ts <= window and address in self.monitored_wallets
        }

        if len(self._recent_sells) < self.settings.coordinated_min_wallets:
            return None

        group = frozenset(self._recent_sells)
        if group in self._notified_groups:
            return None
        self._notified_groups.add(group)

        wallets = sorted(group)
        data = {
            "token_address": self.token_address,
            "wallet_count": len(wallets),
            "wallets": wallets,
            "window_seconds": window,
            "total_usd": sum(self.monitored_wallets[a].total_volume_sold for a in wallets)
        }
        trace.log_event("COORDINATED_ACTIVITY", "WARNING", data)

        if self.alert_system is not None:
            try:
                self.alert_system.notify("COORDINATED_ACTIVITY", self.network, data, 'high')
            except Exception as e:
                trace.log_event("ALERT_DISPATCH", "ERROR", {"error": str(e)})
        return wallets

    # ------------------------------------------
    # Mempool
    # ------------------------------------------

    def _start_mempool_watch(self, stop_event: asyncio.Event):
        connector_for = getattr(self.analyzer, 'connector', None)
        connector = connector_for(self.network) if callable(connector_for) else None
        if connector is None:
            trace.log_event("MEMPOOL_WATCH", "WARNING", {
                "network": self.network,
                "error": "no RPC connector available"
            })
            return
        self._mempool_task = self._track(asyncio.create_task(
            connector.listen_for_pending_transactions(self.handle_pending_transaction, stop_event)
        ))

    def handle_pending_transaction(self, tx: Dict):
        """Marca como ativa a carteira que envia transação a um roteador de DEX"""
        sender = (tx.get('from') or '').lower()
        wallet = self.monitored_wallets.get(sender)
        if wallet is None:
            return
        if self.dex.is_dex_router(tx.get('to') or '', wallet.network):
            wallet.is_active = True
            wallet.last_activity = datetime.now(pytz.utc)
            tx_hash = tx.get('hash')
            trace.log_event("PENDING_DEX_TX", "INFO", {
                "wallet": wallet.address,
                "router": tx.get('to'),
                "tx_hash": tx_hash.hex() if hasattr(tx_hash, 'hex') else tx_hash
            })

    # ------------------------------------------
    # Assinaturas
    # ------------------------------------------

    def on_alert(self, callback: Callable) -> Callable[[], None]:
        self._alert_subscribers.setdefault(callback, None)
        return lambda: self._alert_subscribers.pop(callback, None)

    def on_wallet_update(self, callback: Callable) -> Callable[[], None]:
        self._update_subscribers.setdefault(callback, None)
        return lambda: self._update_subscribers.pop(callback, None)

    async def _run_callback(self, coro, event: str):
        try:
            await coro
        except Exception as e:
            trace.log_event(event, "ERROR", {"error": str(e)})

    def _notify(self, subscribers: Dict[Callable, None], payload: Any, event: str):
        """Chama cada assinante isoladamente; corrotinas viram tarefas"""
        for callback in list(subscribers):
            try:
                result = callback(payload)
                if asyncio.iscoroutine(result):
                    self._track(asyncio.create_task(self._run_callback(result, event)))
            except Exception as e:
                trace.log_event(event, "ERROR", {
                    "callback": getattr(callback, '__name__', repr(callback)),
                    "error": str(e)
                })

    async def _emit_wallet_update(self, wallet: MonitoredWallet, current_balance: float,
                                  previous_balance: Optional[float], now: datetime):
        if not self._update_subscribers:
            return

        price = await self._fetch_price(wallet)
        sell_pressure = 0.0
        if self.settings.track_sell_pressure:
            sell_pressure = calculate_sell_pressure(
                wallet.address,
                await self._fetch_transfers(wallet),
                now=time.time(),
                lookback_seconds=self.settings.sell_pressure_lookback_seconds
            )

        update = WalletUpdate(
            address=wallet.address,
            current_balance=current_balance,
            previous_balance=previous_balance,
            is_active=wallet.is_active,
            last_activity=wallet.last_activity,
            usd_value=current_balance * price,
            sell_pressure=sell_pressure,
            timestamp=now
        )
        self._notify(self._update_subscribers, update, "UPDATE_SUBSCRIBER")

    # ------------------------------------------
    # Estado
    # ------------------------------------------

    def get_status(self) -> Dict:
        """Resumo do monitor, sem efeitos colaterais"""
        wallets = list(self.monitored_wallets.values())
        checked = [w.last_checked for w in wallets if w.last_checked is not None]
        last_checked = max(checked) if checked else None

        return {
            'is_monitoring': self.is_monitoring,
            'wallet_count': len(wallets),
            'connected': self.connected and self.is_monitoring,
            'last_checked': last_checked.isoformat() if last_checked else None,
            'state': self.state.value,
            'token_address': self.token_address,
            'network': self.network,
            'subscriber_count': len(self._alert_subscribers),
            'update_subscriber_count': len(self._update_subscribers),
            'total_alerts': sum(w.alert_count for w in wallets),
            'total_volume_sold': sum(w.total_volume_sold for w in wallets),
            'team_wallets': sum(1 for w in wallets if w.wallet_type == WalletType.TEAM),
            'bundle_wallets': sum(1 for w in wallets if w.wallet_type == WalletType.BUNDLE),
            'cycle_count': self.cycle_count
        }

    def get_wallets(self) -> List[Dict]:
        return [w.to_dict() for w in self.monitored_wallets.values()]
