"""
Case naming helpers.

Raw datasets follow the layout ``imagesTr/<case>_<channel>.nii.gz`` with
labels in ``labelsTr/<case>.nii.gz``. Preprocessed cases and predictions
are stored as ``<case>.npz`` and ``<case>_prediction.npz``.
"""

import re
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, Union

_EXTENSIONS = (".nii.gz", ".nii", ".npz")
_CHANNEL_SUFFIX = re.compile(r"_(\d{4})$")


def strip_extension(filename: str) -> str:
    """Remove a known imaging extension (handles the double .nii.gz)."""
    for ext in _EXTENSIONS:
        if filename.endswith(ext):
            return filename[: -len(ext)]
    return Path(filename).stem


def case_id_from_filename(
    filename: str,
    suffixes: Iterable[str] = ("_prediction",),
    strip_channel: bool = True,
) -> str:
    """
    Extract the case identifier from a file name.

    The ``_XXXX`` channel suffix is only stripped from NIfTI names, and
    only when ``strip_channel`` is set (label maps carry no channel).

    Examples:
        "liver_003_0000.nii.gz" -> "liver_003"
        "liver_003.npz"         -> "liver_003"
        "liver_003_prediction.npz" -> "liver_003"
    """
    filename = Path(filename).name
    name = strip_extension(filename)
    for suffix in suffixes:
        if name.endswith(suffix):
            name = name[: -len(suffix)]
    if strip_channel and filename.endswith((".nii", ".nii.gz")):
        name = _CHANNEL_SUFFIX.sub("", name)
    return name


def channel_index(filename: str) -> int:
    """Return the channel index encoded as ``_XXXX`` (0 when absent)."""
    match = _CHANNEL_SUFFIX.search(strip_extension(Path(filename).name))
    return int(match.group(1)) if match else 0


def group_channel_files(paths: Iterable[Union[str, Path]]) -> Dict[str, List[Path]]:
    """
    Group per-channel image files by case, sorted by channel index.

    Args:
        paths: Image file paths.

    Returns:
        Mapping case id -> channel files in channel order.
    """
    groups: Dict[str, List[Path]] = defaultdict(list)
    for path in paths:
        path = Path(path)
        groups[case_id_from_filename(path.name)].append(path)

    return {
        case: sorted(files, key=lambda p: channel_index(p.name))
        for case, files in sorted(groups.items())
    }
