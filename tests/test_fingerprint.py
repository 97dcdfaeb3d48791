import numpy as np
import pytest

from unet_family.planning import (
    DatasetFingerprint,
    compute_case_fingerprint,
    extract_dataset_fingerprint,
    extract_fingerprint_from_directory,
    load_raw_cases,
)
from unet_family.utils.io import save_nifti

from conftest import make_sphere_case


def test_case_fingerprint_crops_zero_border(sphere_case):
    image, seg = sphere_case
    fp = compute_case_fingerprint(image, seg, spacing=(2.0, 1.0, 1.0), num_samples=50)

    assert fp.shape_before_crop == [24, 32, 32]
    assert fp.shape_after_crop == [16, 24, 24]
    assert fp.relative_size_after_cropping == pytest.approx(16 * 24 * 24 / (24 * 32 * 32))
    assert fp.labels == [0, 1]
    assert len(fp.foreground_samples) == 1
    assert fp.foreground_samples[0].shape == (50,)
    assert np.all(fp.foreground_samples[0] == 300.0)


def test_case_fingerprint_shape_mismatch(sphere_case):
    image, seg = sphere_case
    with pytest.raises(ValueError):
        compute_case_fingerprint(image, seg[:-1], spacing=(1.0, 1.0, 1.0))
    with pytest.raises(ValueError):
        compute_case_fingerprint(image, seg, spacing=(1.0, 1.0))


def test_case_without_foreground_has_no_samples(sphere_case):
    image, _ = sphere_case
    seg = np.zeros(image.shape, dtype=np.int16)
    fp = compute_case_fingerprint(image, seg, spacing=(1.0, 1.0, 1.0))
    assert fp.foreground_samples[0].size == 0
    assert fp.labels == [0]


def test_dataset_fingerprint_aggregates():
    cases = []
    for spacing in [(1.0, 1.0, 1.0), (3.0, 1.0, 1.0), (2.0, 1.0, 1.0)]:
        image, seg = make_sphere_case()
        cases.append((image, seg, spacing))

    fp = extract_dataset_fingerprint(cases, num_samples=300, case_ids=["a", "b", "c"])

    assert fp.num_cases == 3
    assert fp.num_channels == 1
    assert fp.labels == [0, 1]
    assert fp.case_ids == ["a", "b", "c"]
    np.testing.assert_allclose(fp.median_spacing, [2.0, 1.0, 1.0])
    np.testing.assert_allclose(fp.median_shape, [16, 24, 24])

    stats = fp.foreground_intensity_properties["0"]
    assert stats["mean"] == pytest.approx(300.0)
    assert stats["std"] == pytest.approx(0.0)
    assert stats["percentile_00_5"] <= stats["median"] <= stats["percentile_99_5"]


def test_dataset_fingerprint_without_foreground_gives_nan():
    image, _ = make_sphere_case()
    seg = np.zeros(image.shape, dtype=np.int16)
    fp = extract_dataset_fingerprint([(image, seg, (1.0, 1.0, 1.0))])
    assert np.isnan(fp.foreground_intensity_properties["0"]["mean"])


def test_dataset_fingerprint_errors():
    with pytest.raises(ValueError):
        extract_dataset_fingerprint([])

    image, seg = make_sphere_case()
    two_channels = np.stack([image, image])
    with pytest.raises(ValueError):
        extract_dataset_fingerprint(
            [(image, seg, (1.0, 1.0, 1.0)), (two_channels, seg, (1.0, 1.0, 1.0))]
        )


def test_fingerprint_save_and_load(tmp_path):
    image, seg = make_sphere_case()
    fp = extract_dataset_fingerprint([(image, seg, (1.0, 1.0, 1.0))], num_samples=20)
    path = fp.save(tmp_path / "fingerprint.json")
    loaded = DatasetFingerprint.load(path)
    assert loaded.to_dict() == fp.to_dict()


def test_load_raw_cases_npz(write_cases, tmp_path):
    write_cases(n=2)
    case_ids, cases = load_raw_cases(tmp_path)
    assert case_ids == ["case_000", "case_001"]
    image, seg, spacing = cases[0]
    assert image.shape == (1, 24, 32, 32)
    assert seg.shape == (24, 32, 32)
    assert spacing == (1.0, 1.0, 1.0)


def test_load_raw_cases_nifti(tmp_path):
    image, seg = make_sphere_case(shape=(12, 16, 16), radius=3, margin=2)
    save_nifti(tmp_path / "imagesTr" / "liver_001_0000.nii.gz", image, spacing=(3.0, 1.0, 1.0))
    save_nifti(tmp_path / "imagesTr" / "liver_001_0001.nii.gz", image * 2, spacing=(3.0, 1.0, 1.0))
    save_nifti(tmp_path / "labelsTr" / "liver_001.nii.gz", seg, spacing=(3.0, 1.0, 1.0))
    # no label, skipped
    save_nifti(tmp_path / "imagesTr" / "liver_002_0000.nii.gz", image, spacing=(3.0, 1.0, 1.0))

    case_ids, cases = load_raw_cases(tmp_path)

    assert case_ids == ["liver_001"]
    loaded_image, loaded_seg, spacing = cases[0]
    assert loaded_image.shape == (2, 12, 16, 16)
    np.testing.assert_allclose(loaded_image[1], image * 2)
    np.testing.assert_array_equal(loaded_seg, seg)
    assert spacing == pytest.approx((3.0, 1.0, 1.0))

    fp = extract_fingerprint_from_directory(tmp_path, show_progress=False)
    assert fp.num_channels == 2
    assert fp.case_ids == ["liver_001"]


def test_load_raw_cases_empty_directory(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_raw_cases(tmp_path)
