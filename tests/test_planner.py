import numpy as np
import pytest

from unet_family.planning import (
    DatasetFingerprint,
    ExperimentPlanner,
    Plans,
    determine_normalization,
    determine_target_spacing,
    estimate_vram_proxy,
    get_pool_and_conv_props,
)


def _fingerprint(spacings, shapes, channels=1, relative_size=1.0, labels=(0, 1)):
    stats = {
        "mean": 50.0,
        "median": 48.0,
        "std": 10.0,
        "min": 0.0,
        "max": 120.0,
        "percentile_99_5": 110.0,
        "percentile_00_5": 5.0,
    }
    return DatasetFingerprint(
        spacings=[list(s) for s in spacings],
        shapes_after_crop=[list(s) for s in shapes],
        foreground_intensity_properties={str(c): dict(stats) for c in range(channels)},
        labels=list(labels),
        median_relative_size_after_cropping=relative_size,
    )


# Topology

def test_pool_and_conv_props_isotropic():
    num_pool, strides, kernels, patch, divisible = get_pool_and_conv_props(
        [1.0, 1.0, 1.0], [128, 128, 128]
    )
    assert num_pool == [5, 5, 5]
    assert len(strides) == 6
    assert strides[0] == [1, 1, 1]
    assert all(s == [2, 2, 2] for s in strides[1:])
    assert kernels == [[3, 3, 3]] * 6
    assert divisible == [32, 32, 32]
    assert patch == [128, 128, 128]


def test_pool_and_conv_props_anisotropic():
    num_pool, strides, kernels, patch, divisible = get_pool_and_conv_props(
        [3.0, 1.0, 1.0], [40, 160, 160]
    )
    assert num_pool == [3, 5, 5]
    assert strides == [
        [1, 1, 1],
        [1, 2, 2],
        [2, 2, 2],
        [2, 2, 2],
        [2, 2, 2],
        [1, 2, 2],
    ]
    assert kernels == [[1, 3, 3]] + [[3, 3, 3]] * 5
    assert divisible == [8, 32, 32]
    assert patch == [40, 160, 160]


def test_pool_and_conv_props_pads_patch():
    _, _, _, patch, divisible = get_pool_and_conv_props([1.0, 1.0], [100, 70])
    assert all(p % d == 0 for p, d in zip(patch, divisible))
    assert patch[0] >= 100 and patch[1] >= 70


def test_vram_proxy_grows_with_patch():
    strides = [[1, 1, 1], [2, 2, 2], [2, 2, 2]]
    small = estimate_vram_proxy([32, 32, 32], [32, 64, 128], strides, [2, 2, 2], [2, 2], 2)
    large = estimate_vram_proxy([64, 64, 64], [32, 64, 128], strides, [2, 2, 2], [2, 2], 2)
    assert large == pytest.approx(8 * small, rel=1e-6)


# Target spacing

def test_target_spacing_is_median():
    spacings = [[1.0, 0.5, 0.5], [2.0, 0.7, 0.7], [1.5, 0.6, 0.6]]
    shapes = [[100, 200, 200]] * 3
    target = determine_target_spacing(spacings, shapes)
    np.testing.assert_allclose(target, [1.5, 0.6, 0.6])


def test_target_spacing_anisotropic_uses_tenth_percentile():
    spacings = [[4.0, 1.0, 1.0], [4.0, 1.0, 1.0], [6.0, 1.0, 1.0], [6.0, 1.0, 1.0], [6.0, 1.0, 1.0]]
    shapes = [[20, 256, 256]] * 5
    target = determine_target_spacing(spacings, shapes)
    np.testing.assert_allclose(target, [4.0, 1.0, 1.0])


def test_target_spacing_anisotropic_spacing_but_many_slices():
    spacings = [[4.0, 1.0, 1.0], [6.0, 1.0, 1.0], [6.0, 1.0, 1.0]]
    shapes = [[200, 256, 256]] * 3
    target = determine_target_spacing(spacings, shapes)
    np.testing.assert_allclose(target, [6.0, 1.0, 1.0])


# Normalization

def test_normalization_ct_and_mri():
    fp = _fingerprint([[1, 1, 1]], [[10, 10, 10]], channels=2, relative_size=0.5)
    schemes, use_mask = determine_normalization(["CT", "MRI"], fp)
    assert schemes == ["CT", "zscore"]
    assert use_mask == [False, True]


def test_normalization_mask_only_when_cropping_removed_a_lot():
    fp = _fingerprint([[1, 1, 1]], [[10, 10, 10]], relative_size=0.9)
    assert determine_normalization(["MRI"], fp) == (["zscore"], [False])


def test_normalization_channel_mismatch():
    fp = _fingerprint([[1, 1, 1]], [[10, 10, 10]], channels=1)
    with pytest.raises(ValueError):
        determine_normalization(["CT", "MRI"], fp)


# Planner

def test_planner_small_isotropic_dataset():
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 4, [[64, 64, 64]] * 4)
    plans = ExperimentPlanner(fp, modalities=["MRI"], dataset_name="spheres").plan()

    assert plans.dataset_name == "spheres"
    assert set(plans.configurations) == {"2d", "3d_fullres"}
    assert plans.num_classes == 2

    fullres = plans.get_configuration("3d_fullres")
    assert fullres.patch_size == [64, 64, 64]
    assert fullres.spacing == [1.0, 1.0, 1.0]
    assert fullres.batch_size >= 2
    assert fullres.num_stages == len(fullres.pool_op_kernel_sizes)
    assert len(fullres.conv_kernel_sizes) == fullres.num_stages
    assert len(fullres.n_conv_per_stage_decoder) == fullres.num_stages - 1
    assert max(fullres.features_per_stage) <= 320

    two_d = plans.get_configuration("2d")
    assert two_d.patch_size == [64, 64]
    assert two_d.batch_size >= 2
    assert all(p % d == 0 for p, d in zip(two_d.patch_size, two_d.shape_must_be_divisible_by))


def test_planner_large_images_get_lowres_configuration():
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 2, [[512, 512, 512]] * 2)
    plans = ExperimentPlanner(fp, modalities=["CT"]).plan()

    fullres = plans.get_configuration("3d_fullres")
    assert np.prod(fullres.patch_size) < 512**3
    assert fullres.normalization_schemes == ["CT"]

    lowres = plans.get_configuration("3d_lowres")
    assert all(s > 1.0 for s in lowres.spacing)
    assert all(p % d == 0 for p, d in zip(lowres.patch_size, lowres.shape_must_be_divisible_by))


def test_planner_2d_dataset():
    fp = _fingerprint([[0.5, 0.5]] * 3, [[256, 256]] * 3)
    plans = ExperimentPlanner(fp, modalities=["MRI"]).plan()
    assert set(plans.configurations) == {"2d"}
    assert plans.get_configuration("2d").dims == 2


def test_planner_rejects_4d_spacing():
    fp = _fingerprint([[1.0, 1.0, 1.0, 1.0]], [[8, 8, 8, 8]])
    with pytest.raises(ValueError):
        ExperimentPlanner(fp, modalities=["MRI"]).plan()


# Plans IO

@pytest.mark.parametrize("suffix", [".json", ".yaml"])
def test_plans_save_and_load(tmp_path, suffix):
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 4, [[64, 64, 64]] * 4)
    plans = ExperimentPlanner(fp, modalities=["MRI"]).plan()

    path = plans.save(tmp_path / f"plans{suffix}")
    loaded = Plans.load(path)

    assert loaded.to_dict() == plans.to_dict()
    assert loaded.get_configuration("3d_fullres").patch_size == [64, 64, 64]


def test_plans_unknown_configuration():
    fp = _fingerprint([[0.5, 0.5]] * 3, [[256, 256]] * 3)
    plans = ExperimentPlanner(fp, modalities=["MRI"]).plan()
    with pytest.raises(KeyError):
        plans.get_configuration("3d_fullres")


# Memory budget and batch size

def test_patch_shrinks_to_fit_memory_budget():
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 2, [[512, 512, 512]] * 2)
    large = ExperimentPlanner(fp, modalities=["CT"], gpu_memory_target_gb=8).plan()
    small = ExperimentPlanner(fp, modalities=["CT"], gpu_memory_target_gb=2).plan()

    assert large.get_configuration("3d_fullres").patch_size == [128, 128, 128]
    assert small.get_configuration("3d_fullres").patch_size == [80, 80, 80]

    planner = ExperimentPlanner(fp, modalities=["CT"], gpu_memory_target_gb=2)
    fullres = small.get_configuration("3d_fullres")
    estimate = estimate_vram_proxy(
        fullres.patch_size,
        fullres.features_per_stage,
        fullres.pool_op_kernel_sizes,
        fullres.n_conv_per_stage_encoder,
        fullres.n_conv_per_stage_decoder,
        small.num_classes,
    )
    assert estimate <= planner._budget(3)


def test_batch_size_capped_by_dataset_fraction():
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 200, [[64, 64, 64]] * 200)
    fullres = ExperimentPlanner(fp, modalities=["MRI"]).plan().get_configuration("3d_fullres")
    # 5% of 200 cases is 10 patches of a full case
    assert fullres.patch_size == [64, 64, 64]
    assert fullres.batch_size == 10


def test_batch_size_floor_of_two():
    fp = _fingerprint([[1.0, 1.0, 1.0]], [[16, 16, 16]])
    fullres = ExperimentPlanner(fp, modalities=["MRI"]).plan().get_configuration("3d_fullres")
    assert fullres.patch_size == [16, 16, 16]
    assert fullres.batch_size == 2


def test_lowres_stops_once_patch_covers_a_quarter():
    fp = _fingerprint([[1.0, 1.0, 1.0]] * 2, [[512, 512, 512]] * 2)
    lowres = ExperimentPlanner(fp, modalities=["CT"]).plan().get_configuration("3d_lowres")

    median_shape = 512 / np.asarray(lowres.spacing)
    np.testing.assert_allclose(lowres.median_image_size, median_shape)
    coverage = np.prod(lowres.patch_size) / np.prod(median_shape)
    assert 0.25 <= coverage < 0.26
