import numpy as np
import pytest

from unet_family.data.preprocessing import (
    apply_ct_window,
    create_nonzero_mask,
    crop_to_nonzero,
    ct_normalize,
    normalize_image,
    preprocess_case,
    preprocess_dataset,
    resample_data,
    resize_segmentation,
    zscore_normalize,
)
from unet_family.data.preprocessing.normalization import get_window_preset
from unet_family.data.preprocessing.resampler import (
    compute_new_shape,
    get_lowres_axis,
    is_anisotropic,
)
from unet_family.planning.plans import Configuration, Plans
from unet_family.utils.io import load_npz_case

from conftest import make_sphere_case


# Cropping

def test_nonzero_mask_fills_holes():
    image = np.zeros((1, 9, 9), dtype=np.float32)
    image[0, 2:7, 2:7] = 1
    image[0, 4, 4] = 0
    mask = create_nonzero_mask(image)
    assert mask[4, 4]
    assert mask.sum() == 25


def test_crop_to_nonzero(sphere_case):
    image, seg = sphere_case
    cropped, cropped_seg, bbox = crop_to_nonzero(image[None], seg)
    assert cropped.shape == (1, 16, 24, 24)
    assert cropped_seg.shape == (16, 24, 24)
    assert bbox == (slice(4, 20), slice(4, 28), slice(4, 28))
    assert cropped_seg.sum() == seg.sum()


def test_crop_marks_background_outside_mask():
    image = np.zeros((1, 6, 6), dtype=np.float32)
    image[0, 1:5, 1:5] = 1
    image[0, 1, 1] = 0  # corner of the box, not a hole
    _, seg, _ = crop_to_nonzero(image, np.zeros((6, 6), dtype=np.uint8))
    assert seg.dtype == np.int16
    assert seg[0, 0] == -1
    assert (seg == -1).sum() == 1


def test_crop_without_seg_and_all_zero_image():
    image = np.zeros((1, 4, 4), dtype=np.float32)
    cropped, seg, bbox = crop_to_nonzero(image)
    assert cropped.shape == (1, 4, 4)
    assert bbox == (slice(0, 4), slice(0, 4))
    assert np.all(seg == -1)


# Normalization

def test_zscore_normalize():
    image = np.random.rand(10, 10).astype(np.float32) * 50 + 20
    out = zscore_normalize(image)
    assert out.mean() == pytest.approx(0.0, abs=1e-5)
    assert out.std() == pytest.approx(1.0, abs=1e-4)


def test_zscore_normalize_with_mask():
    image = np.zeros((4, 4), dtype=np.float32)
    image[1:3, 1:3] = [[1, 3], [5, 7]]
    mask = image > 0
    out = zscore_normalize(image, mask)
    assert out[mask].mean() == pytest.approx(0.0, abs=1e-6)
    assert np.all(out[~mask] == 0)
    assert np.all(zscore_normalize(image, np.zeros_like(mask)) == 0)


def test_ct_normalize_clips_then_standardizes():
    props = {"mean": 0.0, "std": 100.0, "percentile_00_5": -500.0, "percentile_99_5": 500.0}
    image = np.array([-1000.0, 0.0, 250.0, 3000.0])
    np.testing.assert_allclose(ct_normalize(image, props), [-5.0, 0.0, 2.5, 5.0])


def test_normalize_image_per_channel():
    props = {"0": {"mean": 0.0, "std": 1.0, "percentile_00_5": -1.0, "percentile_99_5": 1.0}}
    image = np.stack([np.linspace(-3, 3, 16).reshape(4, 4), np.arange(16.0).reshape(4, 4)])
    out = normalize_image(image, ["CT", "zscore"], [False, False], props)
    assert out.dtype == np.float32
    assert out[0].min() == -1.0 and out[0].max() == 1.0
    assert out[1].mean() == pytest.approx(0.0, abs=1e-5)

    with pytest.raises(ValueError):
        normalize_image(image, ["zscore"], [False], props)
    with pytest.raises(ValueError):
        normalize_image(image, ["zscore", "minmax"], [False, False], props)


def test_ct_window():
    level, width = get_window_preset("soft_tissue")
    windowed = apply_ct_window(np.array([-1000, 40, 1000]), level, width)
    assert windowed.dtype == np.uint8
    assert windowed.tolist() == [0, 127, 255]
    with pytest.raises(ValueError):
        get_window_preset("unknown")


# Resampling

def test_compute_new_shape():
    np.testing.assert_array_equal(
        compute_new_shape((10, 100, 100), (5.0, 0.5, 0.5), (2.5, 1.0, 1.0)), [20, 50, 50]
    )


def test_anisotropy_helpers():
    assert is_anisotropic((5.0, 1.0, 1.0))
    assert not is_anisotropic((2.0, 1.0, 1.0))
    assert get_lowres_axis((5.0, 1.0, 1.0)) == 0
    assert get_lowres_axis((1.0, 1.0, 1.0)) is None


def test_resample_image_shape_and_dtype():
    data = np.random.rand(2, 8, 16, 16).astype(np.float32)
    out = resample_data(data, (1.0, 1.0, 1.0), (2.0, 2.0, 2.0))
    assert out.shape == (2, 4, 8, 8)
    assert out.dtype == np.float32


def test_resample_same_spacing_is_copy():
    data = np.random.rand(1, 4, 4).astype(np.float32)
    out = resample_data(data, (1.0, 1.0), (1.0, 1.0))
    np.testing.assert_array_equal(out, data)
    assert out is not data


def test_resample_rejects_missing_channel_axis():
    with pytest.raises(ValueError):
        resample_data(np.zeros((4, 4, 4)), (1.0, 1.0, 1.0), (2.0, 2.0, 2.0))


def test_resample_anisotropic_keeps_slices_intact():
    data = np.zeros((1, 4, 8, 8), dtype=np.float32)
    for z in range(4):
        data[0, z] = z + 1
    out = resample_data(data, (5.0, 1.0, 1.0), (2.5, 1.0, 1.0))
    assert out.shape == (1, 8, 8, 8)
    # nearest neighbour along z: every output slice equals one input slice
    assert set(np.unique(out).round(4)) <= {1.0, 2.0, 3.0, 4.0}


def test_resample_segmentation_preserves_labels():
    seg = np.zeros((1, 16, 16, 16), dtype=np.int16)
    seg[0, 4:12, 4:12, 4:12] = 2
    seg[0, 0, 0, 0] = -1
    out = resample_data(seg, (1.0, 1.0, 1.0), (0.5, 0.5, 0.5), is_seg=True)
    assert out.shape == (1, 32, 32, 32)
    assert out.dtype == np.int16
    assert set(np.unique(out)) <= {-1, 0, 2}
    assert (out == 2).sum() == pytest.approx(8 * (8**3), rel=0.1)


def test_resize_segmentation_nearest():
    seg = np.array([[0, 1], [2, 3]], dtype=np.uint8)
    out = resize_segmentation(seg, (4, 4), order=0)
    assert out.dtype == np.uint8
    assert set(np.unique(out)) == {0, 1, 2, 3}


# Pipeline

def _configuration(spacing, patch):
    return Configuration(
        name="3d_fullres" if len(spacing) == 3 else "2d",
        patch_size=list(patch),
        spacing=list(spacing),
        median_image_size=[float(p) for p in patch],
        batch_size=2,
        normalization_schemes=["zscore"],
        use_mask_for_norm=[True],
        features_per_stage=[4, 8],
        conv_kernel_sizes=[[3] * len(spacing)] * 2,
        pool_op_kernel_sizes=[[1] * len(spacing), [2] * len(spacing)],
        n_conv_per_stage_encoder=[2, 2],
        n_conv_per_stage_decoder=[2],
        num_pool_per_axis=[1] * len(spacing),
        shape_must_be_divisible_by=[2] * len(spacing),
    )


def test_preprocess_case(sphere_case):
    image, seg = sphere_case
    configuration = _configuration((2.0, 2.0, 2.0), (8, 12, 12))
    out_image, out_seg, props = preprocess_case(image, seg, (1.0, 1.0, 1.0), configuration, {})

    assert out_image.shape == (1, 8, 12, 12)
    assert out_seg.shape == (8, 12, 12)
    assert props["original_shape"] == [24, 32, 32]
    assert props["shape_after_crop"] == [16, 24, 24]
    assert props["bbox"] == [[4, 20], [4, 28], [4, 28]]
    assert props["target_spacing"] == [2.0, 2.0, 2.0]
    assert set(np.unique(out_seg)) <= {0, 1}
    assert (out_seg == 1).any()


def test_preprocess_case_2d_configuration_keeps_slices(sphere_case):
    image, seg = sphere_case
    configuration = _configuration((2.0, 2.0), (12, 12))
    out_image, out_seg, props = preprocess_case(image, seg, (1.0, 1.0, 1.0), configuration, {})
    assert out_image.shape == (1, 16, 12, 12)
    assert out_seg.shape == (16, 12, 12)
    assert props["target_spacing"] == [1.0, 2.0, 2.0]


def test_preprocess_dataset_writes_npz(tmp_path):
    cases = [make_sphere_case() + ((1.0, 1.0, 1.0),) for _ in range(2)]
    cases[1] = (cases[1][0], cases[1][1], (1.0, 1.0))  # spacing does not fit, skipped
    plans = Plans(
        dataset_name="spheres",
        modalities=["MRI"],
        labels=[0, 1],
        original_median_spacing=[1.0, 1.0, 1.0],
        original_median_shape=[24.0, 32.0, 32.0],
        foreground_intensity_properties={},
        configurations={"3d_fullres": _configuration((1.0, 1.0, 1.0), (16, 24, 24))},
    )

    written = preprocess_dataset(
        ["a", "b"], cases, tmp_path / "out", plans, "3d_fullres", show_progress=False
    )

    assert [p.name for p in written] == ["a.npz"]
    image, label, spacing = load_npz_case(written[0])
    assert image.shape == (1, 16, 24, 24)
    assert label.dtype == np.int16
    np.testing.assert_allclose(spacing, [1.0, 1.0, 1.0])
