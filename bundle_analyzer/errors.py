#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
BundleAnalyzer v1.0 - Monitor de carteiras team/bundle
Autor: Fábio Mota
Data: 2025-06-10
Licença: MIT
"""

# ==============================================
# Módulo: Erros
# ==============================================

class AnalyzerError(Exception):
    """Erro base do módulo"""


class FatalAnalysisError(AnalyzerError):
    """Falha que interrompe a análise; ``stage`` identifica a etapa"""

    STAGES = ("input", "metadata", "holders", "classification")

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"Analysis failed at stage '{stage}': {message}")


class DegradedLookupError(AnalyzerError):
    """Consulta auxiliar falhou; o chamador segue sem o dado"""


class ConfigurationError(AnalyzerError):
    """Configuração ou uso inválido, rejeitado antes de qualquer acesso à rede"""


class NotInitializedError(ConfigurationError):
    """Monitor usado antes de ``initialize``"""


class TransientNetworkError(AnalyzerError):
    """Timeout ou falha de conexão; recuperado apenas no próximo ciclo"""
