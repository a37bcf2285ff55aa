"""配置模块"""

from .settings import PipelineSettings, get_pipeline_settings
from .providers import ExtractionConfig, ExtractionProvider, GradingConfig, GradingProvider
from .deployment_mode import DeploymentConfig, DeploymentMode

__all__ = [
    "PipelineSettings",
    "get_pipeline_settings",
    "ExtractionConfig",
    "ExtractionProvider",
    "GradingConfig",
    "GradingProvider",
    "DeploymentConfig",
    "DeploymentMode",
]
