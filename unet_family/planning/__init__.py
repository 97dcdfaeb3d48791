"""Self-configuring experiment planning (nnU-Net heuristics)."""

from .fingerprint import (
    CaseFingerprint,
    DatasetFingerprint,
    compute_case_fingerprint,
    extract_dataset_fingerprint,
    extract_fingerprint_from_directory,
    load_raw_cases,
)
from .planner import (
    ExperimentPlanner,
    compute_new_shape,
    determine_normalization,
    determine_target_spacing,
    estimate_vram_proxy,
    get_pool_and_conv_props,
)
from .plans import Configuration, Plans, load_configuration

__all__ = [
    "CaseFingerprint",
    "Configuration",
    "DatasetFingerprint",
    "ExperimentPlanner",
    "Plans",
    "compute_case_fingerprint",
    "compute_new_shape",
    "determine_normalization",
    "determine_target_spacing",
    "estimate_vram_proxy",
    "extract_dataset_fingerprint",
    "extract_fingerprint_from_directory",
    "get_pool_and_conv_props",
    "load_configuration",
    "load_raw_cases",
]
