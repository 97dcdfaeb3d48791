import pytest
import torch
from torch import nn

from unet_family.configs.config import ModelConfig
from unet_family.models import PlainConvUNet, UNet, UNetPlusPlus, count_parameters, create_model
from unet_family.models.blocks import (
    ConvNormAct,
    DoubleConv,
    center_crop,
    get_conv,
    get_norm,
)
from unet_family.planning.plans import Configuration, Plans


# Building blocks

def test_get_conv_rejects_unsupported_dims():
    assert get_conv(2) is nn.Conv2d
    assert get_conv(3) is nn.Conv3d
    with pytest.raises(ValueError):
        get_conv(1)


def test_get_norm_variants():
    assert isinstance(get_norm("batch", 2, 8), nn.BatchNorm2d)
    instance = get_norm("instance", 3, 8)
    assert isinstance(instance, nn.InstanceNorm3d) and instance.affine
    assert isinstance(get_norm("group", 2, 8), nn.GroupNorm)
    assert isinstance(get_norm("none", 2, 8), nn.Identity)
    with pytest.raises(ValueError):
        get_norm("layer", 2, 8)


def test_conv_norm_act_bias_follows_norm():
    assert ConvNormAct(1, 4, norm="batch").conv.bias is None
    assert ConvNormAct(1, 4, norm="none").conv.bias is not None


def test_double_conv_valid_padding_shrinks_by_four():
    block = DoubleConv(1, 4, dims=2, padding=0)
    out = block(torch.randn(1, 1, 20, 20))
    assert out.shape == (1, 4, 16, 16)


def test_center_crop():
    x = torch.arange(36.0).view(1, 1, 6, 6)
    cropped = center_crop(x, (2, 2))
    assert cropped.shape == (1, 1, 2, 2)
    assert cropped[0, 0, 0, 0].item() == x[0, 0, 2, 2].item()
    with pytest.raises(ValueError):
        center_crop(x, (8, 8))


# U-Net

@pytest.mark.parametrize("skip_mode", ["concat", "additive"])
@pytest.mark.parametrize("upsample", ["transpose", "interpolate"])
def test_unet_2d_same_padding_keeps_shape(skip_mode, upsample):
    model = UNet(in_channels=1, out_channels=3, dims=2, base_channels=4, depth=3,
                 skip_mode=skip_mode, upsample=upsample)
    out = model(torch.randn(2, 1, 32, 32))
    assert out.shape == (2, 3, 32, 32)


def test_unet_3d_odd_input_size():
    model = UNet(in_channels=2, out_channels=2, dims=3, base_channels=4, depth=2)
    out = model(torch.randn(1, 2, 18, 20, 22))
    assert out.shape == (1, 2, 18, 20, 22)


def test_unet_valid_convolutions_match_paper_shapes():
    model = UNet(dims=2, base_channels=4, depth=4, padding=False)
    assert model.output_shape((572, 572)) == (388, 388)

    small = UNet(dims=2, base_channels=4, depth=2, padding=False)
    assert small.output_shape((44, 44)) == (4, 4)
    out = small(torch.randn(1, 1, 44, 44))
    assert out.shape == (1, 2, 4, 4)


def test_unet_valid_convolutions_reject_bad_sizes():
    model = UNet(dims=2, base_channels=4, depth=2, padding=False)
    with pytest.raises(ValueError):
        model.output_shape((45, 45))  # odd size before pooling
    with pytest.raises(ValueError):
        model.output_shape((20, 20))  # vanishes


def test_unet_input_validation():
    model = UNet(in_channels=1, dims=2, base_channels=4, depth=2)
    with pytest.raises(ValueError):
        model(torch.randn(1, 2, 16, 16))
    with pytest.raises(ValueError):
        model(torch.randn(1, 1, 16, 16, 16))
    with pytest.raises(ValueError):
        UNet(skip_mode="sum")


# U-Net++

def test_unet_plusplus_output_shape():
    model = UNetPlusPlus(in_channels=1, out_channels=2, dims=2, base_channels=4, depth=3)
    out = model(torch.randn(2, 1, 32, 32))
    assert out.shape == (2, 2, 32, 32)


def test_unet_plusplus_deep_supervision_train_and_eval():
    model = UNetPlusPlus(dims=2, base_channels=4, depth=3, deep_supervision=True)
    x = torch.randn(1, 1, 16, 16)

    model.train()
    outputs = model(x)
    assert isinstance(outputs, list) and len(outputs) == 3
    assert all(o.shape == (1, 2, 16, 16) for o in outputs)

    model.eval()
    with torch.no_grad():
        averaged = model(x)
        heads = [model(x, prune_level=level) for level in (1, 2, 3)]
    assert averaged.shape == (1, 2, 16, 16)
    assert torch.allclose(averaged, torch.stack(heads).mean(dim=0), atol=1e-5)


def test_unet_plusplus_pruning():
    model = UNetPlusPlus(dims=3, base_channels=2, depth=2).eval()
    x = torch.randn(1, 1, 8, 8, 8)
    with torch.no_grad():
        pruned = model(x, prune_level=1)
        full = model(x, prune_level=2)
        default = model(x)
    assert pruned.shape == full.shape == (1, 2, 8, 8, 8)
    assert torch.allclose(full, default)
    with pytest.raises(ValueError):
        model(x, prune_level=3)


def test_unet_plusplus_requires_divisible_input():
    model = UNetPlusPlus(dims=2, base_channels=4, depth=3)
    with pytest.raises(ValueError):
        model(torch.randn(1, 1, 20, 20))


# PlainConvUNet

def _plain_unet(deep_supervision=True):
    return PlainConvUNet(
        in_channels=1,
        num_classes=3,
        dims=3,
        features_per_stage=[4, 8, 16],
        kernel_sizes=[[1, 3, 3], [3, 3, 3], [3, 3, 3]],
        strides=[[1, 1, 1], [1, 2, 2], [2, 2, 2]],
        deep_supervision=deep_supervision,
    )


def test_plain_unet_deep_supervision_outputs_highest_resolution_first():
    model = _plain_unet()
    assert model.divisibility == (2, 4, 4)

    model.train()
    outputs = model(torch.randn(1, 1, 8, 16, 16))
    assert [tuple(o.shape) for o in outputs] == [(1, 3, 8, 16, 16), (1, 3, 8, 8, 8)]

    model.eval()
    with torch.no_grad():
        out = model(torch.randn(1, 1, 8, 16, 16))
    assert out.shape == (1, 3, 8, 16, 16)


def test_plain_unet_validation():
    model = _plain_unet(deep_supervision=False)
    with pytest.raises(ValueError):
        model(torch.randn(1, 1, 8, 10, 16))
    with pytest.raises(ValueError):
        PlainConvUNet(1, 2, 2, [4], [3], [1])
    with pytest.raises(ValueError):
        PlainConvUNet(1, 2, 2, [4, 8], [3], [1, 2])


def _tiny_plans():
    configuration = Configuration(
        name="2d",
        patch_size=[16, 16],
        spacing=[1.0, 1.0],
        median_image_size=[16.0, 16.0],
        batch_size=2,
        normalization_schemes=["zscore"],
        use_mask_for_norm=[False],
        features_per_stage=[4, 8, 16],
        conv_kernel_sizes=[[3, 3], [3, 3], [3, 3]],
        pool_op_kernel_sizes=[[1, 1], [2, 2], [2, 2]],
        n_conv_per_stage_encoder=[2, 2, 2],
        n_conv_per_stage_decoder=[2, 2],
        num_pool_per_axis=[2, 2],
        shape_must_be_divisible_by=[4, 4],
    )
    return Plans(
        dataset_name="tiny",
        modalities=["MRI"],
        labels=[0, 1],
        original_median_spacing=[1.0, 1.0],
        original_median_shape=[16.0, 16.0],
        foreground_intensity_properties={},
        configurations={"2d": configuration},
    )


def test_plain_unet_from_plans():
    plans = _tiny_plans()
    model = PlainConvUNet.from_plans(plans.get_configuration("2d"), in_channels=1,
                                     num_classes=plans.num_classes)
    model.eval()
    with torch.no_grad():
        out = model(torch.randn(1, 1, 16, 16))
    assert out.shape == (1, 2, 16, 16)


# Factory

def test_create_model_architectures(tmp_path):
    unet = create_model(ModelConfig(architecture="unet", base_channels=4, depth=2))
    assert isinstance(unet, UNet)
    assert count_parameters(unet) > 0

    nested = create_model(ModelConfig(architecture="unet_plusplus", base_channels=4, depth=2))
    assert isinstance(nested, UNetPlusPlus)

    plans_path = _tiny_plans().save(tmp_path / "plans.json")
    plain = create_model(ModelConfig(architecture="plain_unet", plans_path=plans_path,
                                     plans_configuration="2d"))
    assert isinstance(plain, PlainConvUNet)
    assert plain.num_classes == 2


def test_create_model_errors():
    with pytest.raises(ValueError):
        create_model(ModelConfig(architecture="segformer"))
    with pytest.raises(ValueError):
        create_model(ModelConfig(architecture="plain_unet"))
