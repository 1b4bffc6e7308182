#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Any

# ==============================================
# Módulo: Modelos de Dados
# ==============================================

class WalletType(str, Enum):
    TEAM = "team"
    BUNDLE = "bundle"
    REGULAR = "regular"
    UNKNOWN = "unknown"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


@dataclass(frozen=True)
class TokenMetadata:
    address: str
    name: str
    symbol: str
    decimals: int
    total_supply: str  # valor bruto, em unidades mínimas

    @property
    def total_supply_raw(self) -> int:
        try:
            return int(self.total_supply)
        except (TypeError, ValueError):
            return 0

    @property
    def total_supply_human(self) -> float:
        return self.to_human(self.total_supply_raw)

    def to_human(self, raw: int) -> float:
        """Converte um saldo bruto para unidades legíveis"""
        return raw / 10 ** self.decimals

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass
class Holder:
    address: str
    balance_raw: int
    balance: float
    percentage: float

    def __post_init__(self):
        self.address = self.address.lower()

    @classmethod
    def from_raw(cls, address: str, balance_raw: int, metadata: TokenMetadata) -> "Holder":
        """Cria um holder calculando saldo e percentual com o mesmo snapshot de metadados"""
        balance = metadata.to_human(balance_raw)
        total = metadata.total_supply_human
        percentage = balance / total * 100 if total > 0 else 0.0
        return cls(address=address, balance_raw=balance_raw, balance=balance, percentage=percentage)

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'balance_raw': str(self.balance_raw),
            'balance': self.balance,
            'percentage': self.percentage
        }


@dataclass(frozen=True)
class Deployer:
    address: str
    tx_hash: Optional[str] = None
    block_number: Optional[int] = None

    def to_dict(self) -> Dict:
        return asdict(self)


@dataclass(frozen=True)
class WalletClassification:
    """Variante fechada: o tipo carrega sempre motivo e nível de risco"""
    wallet_type: WalletType
    reason: str
    risk_level: RiskLevel

    @classmethod
    def team(cls, reason: str, risk_level: RiskLevel) -> "WalletClassification":
        return cls(WalletType.TEAM, reason, risk_level)

    @classmethod
    def bundle(cls, reason: str, risk_level: RiskLevel) -> "WalletClassification":
        return cls(WalletType.BUNDLE, reason, risk_level)

    @classmethod
    def regular(cls, reason: str = "normal wallet activity") -> "WalletClassification":
        return cls(WalletType.REGULAR, reason, RiskLevel.LOW)

    @classmethod
    def unknown(cls, reason: str = "classification failed") -> "WalletClassification":
        return cls(WalletType.UNKNOWN, reason, RiskLevel.LOW)

    def to_dict(self) -> Dict:
        return {
            'type': self.wallet_type.value,
            'reason': self.reason,
            'risk_level': self.risk_level.value
        }


@dataclass
class ClassifiedWallet:
    holder: Holder
    classification: WalletClassification

    @property
    def address(self) -> str:
        return self.holder.address

    @property
    def percentage(self) -> float:
        return self.holder.percentage

    @property
    def wallet_type(self) -> WalletType:
        return self.classification.wallet_type

    def to_dict(self) -> Dict:
        data = self.holder.to_dict()
        data.update(self.classification.to_dict())
        return data


@dataclass(frozen=True)
class Transaction:
    hash: str
    from_address: str
    to_address: str
    value: int
    timestamp: int  # segundos desde epoch

    def is_outgoing(self, address: str) -> bool:
        return self.from_address.lower() == address.lower()

    def is_incoming(self, address: str) -> bool:
        return bool(self.to_address) and self.to_address.lower() == address.lower()


@dataclass
class MonitoredWallet:
    """Estado mutável de uma carteira, de posse exclusiva do monitor"""
    address: str
    wallet_type: WalletType
    token_address: str
    network: str
    percentage: float = 0.0
    last_balance: Optional[float] = None
    last_checked: Optional[datetime] = None
    alert_count: int = 0
    total_volume_sold: float = 0.0
    is_active: bool = False
    last_activity: Optional[datetime] = None

    def to_dict(self) -> Dict:
        return {
            'address': self.address,
            'type': self.wallet_type.value,
            'token_address': self.token_address,
            'network': self.network,
            'percentage': self.percentage,
            'last_balance': self.last_balance,
            'last_checked': self.last_checked.isoformat() if self.last_checked else None,
            'alert_count': self.alert_count,
            'total_volume_sold': self.total_volume_sold,
            'is_active': self.is_active,
            'last_activity': self.last_activity.isoformat() if self.last_activity else None
        }


@dataclass(frozen=True)
class SellAlert:
    id: str
    wallet_address: str
    wallet_type: WalletType
    token_address: str
    network: str
    amount_sold: float
    usd_value: float
    previous_balance: float
    new_balance: float
    change_percentage: str
    timestamp: datetime
    alert_count: int = 0
    total_volume_sold: float = 0.0
    destination_venue: Optional[str] = None
    transaction_hash: Optional[str] = None
    explorer_link: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['wallet_type'] = self.wallet_type.value
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class WalletUpdate:
    address: str
    current_balance: float
    previous_balance: Optional[float]
    is_active: bool
    last_activity: Optional[datetime]
    usd_value: float
    sell_pressure: float
    timestamp: datetime

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['last_activity'] = self.last_activity.isoformat() if self.last_activity else None
        data['timestamp'] = self.timestamp.isoformat()
        return data


@dataclass(frozen=True)
class RiskAssessment:
    risk_level: RiskLevel
    recommendation: str
    team_supply_percentage: float
    bundle_supply_percentage: float

    @property
    def total_risky_supply(self) -> float:
        return self.team_supply_percentage + self.bundle_supply_percentage

    def to_dict(self) -> Dict:
        return {
            'risk_level': self.risk_level.value,
            'recommendation': self.recommendation,
            'team_supply_percentage': self.team_supply_percentage,
            'bundle_supply_percentage': self.bundle_supply_percentage,
            'total_risky_supply': self.total_risky_supply
        }


@dataclass
class ClassificationResult:
    team: List[ClassifiedWallet] = field(default_factory=list)
    bundle: List[ClassifiedWallet] = field(default_factory=list)
    regular: List[ClassifiedWallet] = field(default_factory=list)


@dataclass
class AnalysisResult:
    contract_address: str
    network: str
    metadata: TokenMetadata
    holders: List[Holder]
    team_wallets: List[ClassifiedWallet]
    bundle_wallets: List[ClassifiedWallet]
    regular_wallets: List[ClassifiedWallet]
    risk_assessment: RiskAssessment
    timestamp: datetime
    deployer: Optional[Deployer] = None
    distribution: Dict[str, Any] = field(default_factory=dict)
    market: Dict[str, Any] = field(default_factory=dict)

    def watchlist(self) -> List[ClassifiedWallet]:
        """Carteiras sinalizadas que devem ser monitoradas"""
        return list(self.team_wallets) + list(self.bundle_wallets)

    def to_dict(self) -> Dict:
        return {
            'contract_address': self.contract_address,
            'network': self.network,
            'deployer': self.deployer.to_dict() if self.deployer else None,
            'metadata': self.metadata.to_dict(),
            'holders': [h.to_dict() for h in self.holders],
            'team_wallets': [w.to_dict() for w in self.team_wallets],
            'bundle_wallets': [w.to_dict() for w in self.bundle_wallets],
            'regular_wallets': [w.to_dict() for w in self.regular_wallets],
            'risk_assessment': self.risk_assessment.to_dict(),
            'distribution': self.distribution,
            'market': self.market,
            'timestamp': self.timestamp.isoformat()
        }
