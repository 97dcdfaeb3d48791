import csv

import pytest
import torch
from torch.utils.data import DataLoader, TensorDataset

from unet_family.data import PatchDataset
from unet_family.models import PlainConvUNet, UNet
from unet_family.training import Trainer, crop_target_to_output, mean_foreground_dice

CPU = torch.device("cpu")


def _loaders(write_cases, patch_size=(16, 16)):
    paths = write_cases(n=3)
    train_ds = PatchDataset(paths[:2], patch_size, oversample_foreground_percent=1.0,
                            samples_per_epoch=4)
    val_ds = PatchDataset(paths[2:], patch_size, oversample_foreground_percent=1.0,
                          samples_per_epoch=2)
    return DataLoader(train_ds, batch_size=2), DataLoader(val_ds, batch_size=2)


def test_crop_target_to_output():
    labels = torch.arange(64).view(1, 1, 8, 8)
    output = torch.zeros(1, 2, 4, 4)
    cropped = crop_target_to_output(output, labels)
    assert cropped.shape == (1, 1, 4, 4)
    assert cropped[0, 0, 0, 0].item() == labels[0, 0, 2, 2].item()

    same = crop_target_to_output([torch.zeros(1, 2, 8, 8), output], labels)
    assert same is labels


def test_mean_foreground_dice():
    target = torch.zeros(1, 1, 4, 4, dtype=torch.long)
    target[..., :2, :] = 1
    logits = torch.zeros(1, 3, 4, 4)
    logits[:, 1, :2, :] = 5
    logits[:, 0, 2:, :] = 5
    # class 2 absent from both and skipped
    assert mean_foreground_dice(logits, target) == pytest.approx(1.0)

    empty = torch.zeros(1, 1, 4, 4, dtype=torch.long)
    background = torch.zeros(1, 2, 4, 4)
    background[:, 0] = 1
    assert mean_foreground_dice(background, empty) == 1.0

    binary = torch.full((1, 1, 4, 4), -1.0)
    assert mean_foreground_dice(binary, target) == 0.0


def test_fit_writes_metrics_and_checkpoints(write_cases, tmp_path):
    train_loader, val_loader = _loaders(write_cases)
    model = UNet(in_channels=1, out_channels=2, dims=2, base_channels=4, depth=2)
    trainer = Trainer(model, CPU, tmp_path / "run", max_epochs=2,
                      model_config={"architecture": "unet"})

    history = trainer.fit(train_loader, val_loader, epochs=2, show_progress=False)

    assert history["epoch"] == [1, 2]
    assert len(history["train_loss"]) == 2
    # poly schedule decays the learning rate
    assert history["lr"][1] < history["lr"][0]

    with open(tmp_path / "run" / "metrics.csv", newline="") as f:
        rows = list(csv.reader(f))
    assert rows[0] == ["epoch", "train_loss", "val_loss", "val_dice", "lr"]
    assert len(rows) == 3

    assert (trainer.checkpoint_dir / "best.pt").exists()
    last = torch.load(trainer.checkpoint_dir / "last.pt", weights_only=False)
    assert last["epoch"] == 2
    assert last["model_config"] == {"architecture": "unet"}
    assert set(last) >= {"model_state", "optimizer_state", "scheduler_state", "val_dice"}


def test_resume_from_checkpoint(write_cases, tmp_path):
    train_loader, val_loader = _loaders(write_cases)
    model = UNet(dims=2, base_channels=4, depth=2)
    trainer = Trainer(model, CPU, tmp_path, optimizer="AdamW", learning_rate=1e-3,
                      scheduler="plateau")
    trainer.fit(train_loader, val_loader, epochs=1, show_progress=False)

    resumed = Trainer(UNet(dims=2, base_channels=4, depth=2), CPU, tmp_path,
                      optimizer="AdamW", scheduler="plateau")
    epoch = resumed.load_checkpoint(trainer.checkpoint_dir / "last.pt")
    assert epoch == 1
    assert resumed.best_val_dice == trainer.best_val_dice
    for a, b in zip(resumed.model.parameters(), trainer.model.parameters()):
        assert torch.equal(a, b)

    resumed.fit(train_loader, val_loader, epochs=2, start_epoch=epoch + 1, show_progress=False)
    with open(tmp_path / "metrics.csv", newline="") as f:
        rows = list(csv.reader(f))
    assert [r[0] for r in rows] == ["epoch", "1", "2"]


def test_resume_keeps_best_dice_and_best_checkpoint(write_cases, tmp_path):
    train_loader, val_loader = _loaders(write_cases)
    first = Trainer(UNet(dims=2, base_channels=4, depth=2), CPU, tmp_path / "run1")
    first.best_val_dice = 0.9
    first.save_checkpoint(1, 0.9, "best.pt")
    first.save_checkpoint(2, 0.5, "last.pt")

    resumed = Trainer(UNet(dims=2, base_channels=4, depth=2), CPU, tmp_path / "run2")
    epoch = resumed.load_checkpoint(first.checkpoint_dir / "last.pt")
    assert epoch == 2
    assert resumed.best_val_dice == 0.9

    # An epoch that scores worse than every earlier one
    resumed.validate = lambda loader, show_progress=True: (1.0, 0.0)
    resumed.fit(train_loader, val_loader, epochs=3, start_epoch=3, show_progress=False)

    assert resumed.best_val_dice == 0.9
    best = torch.load(resumed.checkpoint_dir / "best.pt", weights_only=False)
    assert best["val_dice"] == 0.9
    assert torch.load(resumed.checkpoint_dir / "last.pt", weights_only=False)["epoch"] == 3


def test_deep_supervision_training(write_cases, tmp_path):
    train_loader, val_loader = _loaders(write_cases)
    model = PlainConvUNet(
        in_channels=1,
        num_classes=2,
        dims=2,
        features_per_stage=[4, 8, 8],
        kernel_sizes=[3, 3, 3],
        strides=[1, 2, 2],
        deep_supervision=True,
    )
    trainer = Trainer(model, CPU, tmp_path)
    loss = trainer.train_epoch(train_loader, 1, 1, show_progress=False)
    assert loss == loss  # not NaN
    val_loss, val_dice = trainer.validate(val_loader, show_progress=False)
    assert 0.0 <= val_dice <= 1.0


def test_valid_convolution_unet_trains_on_cropped_targets(tmp_path):
    images = torch.randn(2, 1, 44, 44)
    labels = (torch.rand(2, 1, 44, 44) > 0.5).long()
    loader = DataLoader(TensorDataset(images, labels), batch_size=2)
    model = UNet(dims=2, base_channels=4, depth=2, padding=False)
    trainer = Trainer(model, CPU, tmp_path)
    assert trainer.train_epoch(loader, 1, 1, show_progress=False) > -1.0


def test_trainer_rejects_unknown_options(tmp_path):
    model = UNet(dims=2, base_channels=4, depth=2)
    with pytest.raises(ValueError):
        Trainer(model, CPU, tmp_path, optimizer="rmsprop")
    with pytest.raises(ValueError):
        Trainer(model, CPU, tmp_path, scheduler="cosine")


def test_validate_empty_loader(tmp_path):
    trainer = Trainer(UNet(dims=2, base_channels=4, depth=2), CPU, tmp_path)
    with pytest.raises(ValueError):
        trainer.validate([], show_progress=False)
