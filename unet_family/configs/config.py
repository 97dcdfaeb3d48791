"""
Configuration management for the U-Net family toolkit.

Provides dataclass-based configuration with YAML loading support.
"""

import os
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import yaml


@dataclass
class ModelConfig:
    """Model architecture configuration."""

    architecture: str = "unet"  # "unet", "unet_plusplus" or "plain_unet"
    dims: int = 2
    in_channels: int = 1
    out_channels: int = 2
    base_channels: int = 32
    depth: int = 4
    norm: str = "batch"
    padding: bool = True
    skip_mode: str = "concat"  # "concat" or "additive"
    upsample: str = "transpose"
    deep_supervision: bool = False

    # Only used by plain_unet
    plans_path: Optional[Path] = None
    plans_configuration: str = "3d_fullres"

    def __post_init__(self):
        if isinstance(self.plans_path, str):
            self.plans_path = Path(os.path.expandvars(self.plans_path))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to plain dictionary."""
        data = asdict(self)
        data["plans_path"] = str(self.plans_path) if self.plans_path else None
        return data


@dataclass
class AugmentationConfig:
    """Augmentation parameters for training."""

    mirror_prob: float = 0.5
    rotate_prob: float = 0.2
    rotate_range: Tuple[float, float] = (-15.0, 15.0)
    noise_prob: float = 0.1
    noise_std: float = 0.1
    brightness_prob: float = 0.15
    brightness_range: Tuple[float, float] = (0.75, 1.25)
    contrast_prob: float = 0.15
    contrast_range: Tuple[float, float] = (0.75, 1.25)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for SpatialAugmentation kwargs."""
        return asdict(self)


@dataclass
class TrainingConfig:
    """Training hyperparameters."""

    patch_size: Tuple[int, ...] = (128, 128)
    batch_size: int = 2
    learning_rate: float = 1e-2
    weight_decay: float = 3e-5
    epochs: int = 100
    num_workers: int = 2
    oversample_foreground_percent: float = 0.33

    # Optimizer settings
    optimizer: str = "SGD"  # "SGD" or "AdamW"
    momentum: float = 0.99
    gradient_clip_norm: float = 12.0

    # Scheduler settings
    scheduler: str = "poly"  # "poly" or "plateau"
    poly_exponent: float = 0.9
    scheduler_factor: float = 0.5
    scheduler_patience: int = 3
    scheduler_min_lr: float = 1e-6

    # Loss settings
    ce_weight: float = 1.0
    dice_weight: float = 1.0

    # Data split
    train_ratio: float = 0.8
    val_ratio: float = 0.2
    test_ratio: float = 0.0
    split_seed: int = 42


@dataclass
class InferenceConfig:
    """Inference parameters."""

    patch_size: Tuple[int, ...] = (128, 128)
    step_size: float = 0.5
    use_gaussian: bool = True
    use_mirroring: bool = False
    keep_largest_component: bool = False


@dataclass
class PlanningConfig:
    """Experiment planning parameters."""

    modalities: Tuple[str, ...] = ("CT",)
    gpu_memory_target_gb: float = 8.0
    num_foreground_samples: int = 10000
    anisotropy_threshold: float = 3.0


@dataclass
class Config:
    """
    Main configuration class combining all config sections.

    Can be loaded from YAML or created programmatically.
    """

    # Paths
    data_root: Optional[Path] = None
    output_root: Optional[Path] = None
    checkpoint_path: Optional[Path] = None

    # Sub-configs
    model: ModelConfig = field(default_factory=ModelConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)
    augmentation: AugmentationConfig = field(default_factory=AugmentationConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    planning: PlanningConfig = field(default_factory=PlanningConfig)

    def __post_init__(self):
        """Convert string paths to Path objects."""
        if isinstance(self.data_root, str):
            self.data_root = Path(self.data_root)
        if isinstance(self.output_root, str):
            self.output_root = Path(self.output_root)
        if isinstance(self.checkpoint_path, str):
            self.checkpoint_path = Path(self.checkpoint_path)

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "Config":
        """
        Load configuration from YAML file.

        Args:
            path: Path to YAML configuration file.

        Returns:
            Config instance.
        """
        path = Path(path)

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        # Handle environment variable expansion in paths
        for key in ["data_root", "output_root", "checkpoint_path"]:
            if key in data and data[key]:
                data[key] = os.path.expandvars(data[key])

        unknown = set(data) - {f.name for f in fields(cls)}
        if unknown:
            raise KeyError(f"Unknown config keys in {path.name}: {sorted(unknown)}")

        # Parse sub-configs
        model = ModelConfig(**data.pop("model", None) or {})
        training = TrainingConfig(**_parse_tuples(data.pop("training", None) or {}))
        augmentation = AugmentationConfig(
            **_parse_tuples(data.pop("augmentation", None) or {})
        )
        inference = InferenceConfig(**_parse_tuples(data.pop("inference", None) or {}))
        planning = PlanningConfig(**_parse_tuples(data.pop("planning", None) or {}))

        return cls(
            model=model,
            training=training,
            augmentation=augmentation,
            inference=inference,
            planning=planning,
            **data,
        )

    def to_yaml(self, path: Union[str, Path]) -> None:
        """
        Save configuration to YAML file.

        Args:
            path: Output path.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            yaml.safe_dump(self.to_dict(), f, default_flow_style=False, sort_keys=False)

    def to_dict(self) -> Dict[str, Any]:
        """Convert entire config to nested dictionary of YAML-safe values."""
        return {
            "data_root": str(self.data_root) if self.data_root else None,
            "output_root": str(self.output_root) if self.output_root else None,
            "checkpoint_path": (
                str(self.checkpoint_path) if self.checkpoint_path else None
            ),
            "model": self.model.to_dict(),
            "training": _lists(asdict(self.training)),
            "augmentation": _lists(self.augmentation.to_dict()),
            "inference": _lists(asdict(self.inference)),
            "planning": _lists(asdict(self.planning)),
        }


_TUPLE_FIELDS = {
    "patch_size",
    "rotate_range",
    "brightness_range",
    "contrast_range",
    "modalities",
}


def _parse_tuples(d: Dict[str, Any]) -> Dict[str, Any]:
    """Convert lists to tuples for fields that expect tuples."""
    result = {}
    for k, v in d.items():
        if k in _TUPLE_FIELDS and isinstance(v, list):
            result[k] = tuple(v)
        else:
            result[k] = v
    return result


def _lists(d: Dict[str, Any]) -> Dict[str, Any]:
    """Convert tuples to lists so yaml.safe_dump accepts them."""
    return {k: list(v) if isinstance(v, tuple) else v for k, v in d.items()}
