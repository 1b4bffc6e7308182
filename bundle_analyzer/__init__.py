from .config import ModuleConfig, ModuleIdentity
from .errors import (
    AnalyzerError, FatalAnalysisError, DegradedLookupError,
    ConfigurationError, NotInitializedError, TransientNetworkError
)
from .blockchain import BlockchainConnector
from .explorer import ScanClient
from .analysis import TokenAnalyzer, DexAnalyzer
from .classifier import WalletClassifier, assess_risk
from .monitor import RealTimeMonitor, MonitorState, calculate_sell_pressure
from .alerts import AlertSystem, AlertStore
from .tracker import BundleTracker
from .webapp import app, create_app, run_server
__all__ = [
    "ModuleConfig", "ModuleIdentity", "AnalyzerError", "FatalAnalysisError",
    "DegradedLookupError", "ConfigurationError", "NotInitializedError",
    "TransientNetworkError", "BlockchainConnector", "ScanClient",
    "TokenAnalyzer", "DexAnalyzer", "WalletClassifier", "assess_risk",
    "RealTimeMonitor", "MonitorState", "calculate_sell_pressure",
    "AlertSystem", "AlertStore", "BundleTracker", "app", "create_app", "run_server"
]
