"""Configuration management."""

from .config import (
    AugmentationConfig,
    Config,
    InferenceConfig,
    ModelConfig,
    PlanningConfig,
    TrainingConfig,
)

__all__ = [
    "AugmentationConfig",
    "Config",
    "InferenceConfig",
    "ModelConfig",
    "PlanningConfig",
    "TrainingConfig",
]
