#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

import os
import re
import json
import html
import asyncio
import smtplib
from typing import Dict, List, Optional, Set
from collections import deque
from email.mime.text import MIMEText
from threading import Lock
import telegram
from telegram.constants import ParseMode
from discord_webhook import DiscordWebhook

from .config import AlertConfig, ModuleConfig
from .models import SellAlert, WalletType
from .utils import Utils, trace

PRIORITY_EMOJI = {
    'high': '🚨',
    'medium': '⚠️',
    'low': 'ℹ️'
}

HIGH_PRIORITY_USD = 10000

# ==============================================
# Módulo: Persistência de Alertas
# ==============================================

class AlertStore:
    """Log de alertas em JSON Lines com buffer dos mais recentes"""

    def __init__(self, path: str, maxlen: int = 500):
        self.path = path
        self.buffer = deque(maxlen=maxlen)
        self.lock = Lock()
        self._load()

    def _load(self):
        if not os.path.exists(self.path):
            return
        try:
            with open(self.path, 'r') as f:
                for line in f:
                    line = line.strip()
                    if line:
                        self.buffer.append(json.loads(line))
        except (OSError, ValueError) as e:
            trace.log_event("ALERT_STORE_LOAD", "WARNING", {
                "path": self.path,
                "error": str(e)
            })

    def store(self, alert: SellAlert) -> bool:
        """Registra o alerta; falhas de escrita são apenas logadas"""
        record = alert.to_dict()
        with self.lock:
            self.buffer.append(record)
            try:
                directory = os.path.dirname(self.path)
                if directory:
                    os.makedirs(directory, exist_ok=True)
                with open(self.path, 'a') as f:
                    f.write(json.dumps(record, default=str) + "\n")
                return True
            except OSError as e:
                trace.log_event("ALERT_STORE", "ERROR", {
                    "path": self.path,
                    "alert_id": alert.id,
                    "error": str(e)
                })
                return False

    def recent(self, limit: int = 50) -> List[Dict]:
        """Alertas mais recentes, do mais novo para o mais antigo"""
        with self.lock:
            items = list(self.buffer)
        return list(reversed(items))[:limit]

# ==============================================
# Módulo: Alertas
# ==============================================

class AlertSystem:
    """Sistema de alertas multi-canal"""

    def __init__(self, config: Optional[AlertConfig] = None, store: Optional[AlertStore] = None):
        self.config = config or ModuleConfig().alerts
        self.store = store
        self.background_tasks: Set[asyncio.Task] = set()

    @property
    def channels(self) -> List[str]:
        channels = []
        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            channels.append('telegram')
        if self.config.discord_webhook:
            channels.append('discord')
        if self.config.email_alerts.get('enabled'):
            channels.append('email')
        return channels

    # ------------------------------------------
    # Canais
    # ------------------------------------------

    async def _send_telegram(self, text: str) -> bool:
        try:
            async with telegram.Bot(token=self.config.telegram_bot_token) as bot:
                await bot.send_message(
                    chat_id=self.config.telegram_chat_id,
                    text=text[:4096],
                    parse_mode=ParseMode.HTML
                )
            return True
        except Exception as e:
            trace.log_event(
                "ALERT_TELEGRAM",
                "ERROR",
                {
                    "error": str(e),
                    "message": text[:100]
                }
            )
            return False

    async def _send_discord(self, text: str) -> bool:
        try:
            webhook = DiscordWebhook(url=self.config.discord_webhook, content=self.strip_html(text)[:2000])
            response = await asyncio.to_thread(webhook.execute)
            status = getattr(response, 'status_code', 200)
            if status >= 400:
                raise RuntimeError(f"Discord webhook returned {status}")
            return True
        except Exception as e:
            trace.log_event(
                "ALERT_DISCORD",
                "ERROR",
                {
                    "error": str(e),
                    "message": text[:100]
                }
            )
            return False

    def _smtp_send(self, subject: str, body: str):
        email = self.config.email_alerts
        msg = MIMEText(body)
        msg['Subject'] = subject
        msg['From'] = email['email_from']
        msg['To'] = email['email_to']

        with smtplib.SMTP(email['smtp_server'], email['smtp_port']) as server:
            server.starttls()
            server.login(email['email_from'], email['email_password'])
            server.send_message(msg)

    async def _send_email(self, text: str, priority: str) -> bool:
        try:
            await asyncio.to_thread(
                self._smtp_send,
                f"[{priority.upper()}] Wallet Alert",
                self.strip_html(text)
            )
            return True
        except Exception as e:
            trace.log_event(
                "ALERT_EMAIL",
                "ERROR",
                {
                    "error": str(e),
                    "message": text[:100]
                }
            )
            return False

    @trace.trace_operation
    async def send_alert(self, message: str, priority: str = 'medium') -> bool:
        """Envia para todos os canais configurados.

        Retorna ``True`` se ao menos um canal aceitou a mensagem.
        """
        channels = self.channels
        if not channels:
            trace.log_event("ALERT_DELIVERY", "WARNING", {
                "error": "no alert channel configured",
                "message": message[:100]
            })
            return False

        emoji = PRIORITY_EMOJI.get(priority, '📢')
        text = f"{emoji} {message}"

        sends = []
        if 'telegram' in channels:
            sends.append(self._send_telegram(text))
        if 'discord' in channels:
            sends.append(self._send_discord(text))
        if 'email' in channels:
            sends.append(self._send_email(text, priority))

        results = await asyncio.gather(*sends)
        return any(results)

    # ------------------------------------------
    # Despacho de alertas de venda
    # ------------------------------------------

    @staticmethod
    def alert_priority(alert: SellAlert) -> str:
        if alert.wallet_type == WalletType.TEAM or alert.usd_value >= HIGH_PRIORITY_USD:
            return 'high'
        return 'medium'

    async def deliver(self, alert: SellAlert) -> bool:
        """Persiste e envia um alerta de venda; nunca levanta exceção"""
        if self.store is not None:
            try:
                await asyncio.to_thread(self.store.store, alert)
            except Exception as e:
                trace.log_event("ALERT_STORE", "ERROR", {
                    "alert_id": alert.id,
                    "error": str(e)
                })

        try:
            return await self.send_alert(
                self.format_alert("SELL_DETECTED", alert.network, alert.to_dict()),
                self.alert_priority(alert)
            )
        except Exception as e:
            trace.log_event("ALERT_DELIVERY", "ERROR", {
                "alert_id": alert.id,
                "error": str(e)
            })
            return False

    def dispatch(self, alert: SellAlert) -> asyncio.Task:
        """Agenda a entrega em segundo plano e retorna imediatamente"""
        task = asyncio.create_task(self.deliver(alert))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    def notify(self, event_type: str, network: str, data: Dict, priority: str = 'high') -> asyncio.Task:
        """Agenda uma notificação formatada em segundo plano"""
        task = asyncio.create_task(self.send_alert(self.format_alert(event_type, network, data), priority))
        self.background_tasks.add(task)
        task.add_done_callback(self.background_tasks.discard)
        return task

    async def drain(self):
        """Aguarda as entregas pendentes"""
        if self.background_tasks:
            await asyncio.gather(*list(self.background_tasks), return_exceptions=True)

    # ------------------------------------------
    # Formatação
    # ------------------------------------------

    @staticmethod
    def strip_html(text: str) -> str:
        return html.unescape(re.sub(r'<[^>]+>', '', text))

    @staticmethod
    def format_sell_alert(data: Dict) -> str:
        """Mensagem HTML de venda detectada"""
        tx_hash = data.get('transaction_hash')
        if tx_hash and data.get('explorer_link'):
            tx_line = f"🔗 <b>Transaction:</b> <a href=\"{html.escape(data['explorer_link'])}\">{html.escape(tx_hash[:10])}...</a>\n"
        else:
            tx_line = ""

        wallet_type = data.get('wallet_type')
        wallet_type = getattr(wallet_type, 'value', wallet_type)

        return (
            f"<b>WALLET SELL ALERT</b>\n\n"
            f"💼 <b>Wallet:</b> <code>{html.escape(str(data.get('wallet_address')))}</code>\n"
            f"🏷️ <b>Type:</b> {html.escape(str(wallet_type))}\n\n"
            f"💰 <b>Amount Sold:</b> {float(data.get('amount_sold') or 0):.4f} tokens\n"
            f"💵 <b>USD Value:</b> ${float(data.get('usd_value') or 0):.2f}\n\n"
            f"📊 <b>Balance Change:</b>\n"
            f"   • Previous: {float(data.get('previous_balance') or 0):.4f}\n"
            f"   • New: {float(data.get('new_balance') or 0):.4f}\n"
            f"   • Change: -{data.get('change_percentage')}%\n\n"
            f"🏪 <b>DEX:</b> {html.escape(str(data.get('destination_venue') or 'Unknown'))}\n"
            f"🌐 <b>Network:</b> {html.escape(str(data.get('network', '')).upper())}\n"
            f"{tx_line}\n"
            f"⏰ <b>Time:</b> {data.get('timestamp')}"
        )

    @staticmethod
    def format_alert(event_type: str, network: str, data: Dict) -> str:
        """Formata um alerta de acordo com o tipo de evento"""
        if event_type == "SELL_DETECTED":
            return AlertSystem.format_sell_alert(data)
        elif event_type == "COORDINATED_ACTIVITY":
            wallets = ", ".join(Utils.short_address(w) for w in data.get('wallets', []))
            return (
                f"<b>COORDINATED ACTIVITY</b> em {network.upper()}\n\n"
                f"{data.get('wallet_count', 0)} carteiras vendendo em {data.get('window_seconds', 0)}s\n"
                f"Token: <code>{html.escape(str(data.get('token_address')))}</code>\n"
                f"Carteiras: {html.escape(wallets)}\n"
                f"Valor total: ${float(data.get('total_usd') or 0):.2f}"
            )
        elif event_type == "HIGH_RISK":
            return (
                f"<b>ALTO RISCO</b> detectado em {network.upper()}\n\n"
                f"Token: {html.escape(str(data.get('symbol', '')))} "
                f"<code>{html.escape(str(data.get('token_address')))}</code>\n"
                f"Team: {float(data.get('team_supply_percentage') or 0):.2f}% | "
                f"Bundle: {float(data.get('bundle_supply_percentage') or 0):.2f}%\n"
                f"{html.escape(str(data.get('recommendation', '')))}"
            )
        else:
            return f"Evento {html.escape(event_type)} em {network.upper()}: {html.escape(json.dumps(data, indent=2, default=str))}"
