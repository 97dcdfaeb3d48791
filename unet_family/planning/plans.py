"""
Plans: the output of experiment planning.

A ``Plans`` object holds one ``Configuration`` per training setup
("2d", "3d_fullres", "3d_lowres"). Each configuration fully describes
preprocessing (target spacing, normalization) and the network topology.
"""

import json
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml


@dataclass
class Configuration:
    """A single planned training configuration."""

    name: str
    patch_size: List[int]
    spacing: List[float]
    median_image_size: List[float]
    batch_size: int
    normalization_schemes: List[str]
    use_mask_for_norm: List[bool]
    features_per_stage: List[int]
    conv_kernel_sizes: List[List[int]]
    pool_op_kernel_sizes: List[List[int]]
    n_conv_per_stage_encoder: List[int]
    n_conv_per_stage_decoder: List[int]
    num_pool_per_axis: List[int]
    shape_must_be_divisible_by: List[int]
    anisotropy_threshold: float = 3.0

    @property
    def dims(self) -> int:
        return len(self.patch_size)

    @property
    def num_stages(self) -> int:
        return len(self.features_per_stage)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        return cls(**data)


@dataclass
class Plans:
    """Dataset-level plans with all derived configurations."""

    dataset_name: str
    modalities: List[str]
    labels: List[int]
    original_median_spacing: List[float]
    original_median_shape: List[float]
    foreground_intensity_properties: Dict[str, Dict[str, float]]
    configurations: Dict[str, Configuration] = field(default_factory=dict)

    @property
    def num_classes(self) -> int:
        """Number of output channels (labels including background)."""
        return max(len(self.labels), 2)

    def get_configuration(self, name: str) -> Configuration:
        """
        Look up a configuration by name.

        Raises:
            KeyError: If the configuration was not planned.
        """
        if name not in self.configurations:
            raise KeyError(
                f"Configuration '{name}' not in plans. Available: {sorted(self.configurations)}"
            )
        return self.configurations[name]

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["configurations"] = {
            name: cfg.to_dict() for name, cfg in self.configurations.items()
        }
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plans":
        data = dict(data)
        configurations = {
            name: Configuration.from_dict(cfg)
            for name, cfg in (data.pop("configurations", None) or {}).items()
        }
        return cls(configurations=configurations, **data)

    def save(self, path: Union[str, Path]) -> Path:
        """
        Save plans as JSON, or YAML if the suffix is .yaml/.yml.

        Args:
            path: Output path.

        Returns:
            Path to saved file.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            if path.suffix in (".yaml", ".yml"):
                yaml.safe_dump(self.to_dict(), f, default_flow_style=None, sort_keys=False)
            else:
                json.dump(self.to_dict(), f, indent=2)

        return path

    @classmethod
    def load(cls, path: Union[str, Path]) -> "Plans":
        """Load plans written by ``save``."""
        path = Path(path)
        with open(path, "r") as f:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            else:
                data = json.load(f)
        return cls.from_dict(data)


def load_configuration(
    plans_path: Union[str, Path],
    configuration: str,
) -> Configuration:
    """Convenience loader for a single configuration."""
    return Plans.load(plans_path).get_configuration(configuration)
