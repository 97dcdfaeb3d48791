"""
U-Net Family - reference implementations for medical image segmentation

A small package accompanying the U-Net / U-Net++ / nnU-Net report:
- Model architectures (U-Net, U-Net++, nnU-Net style PlainConvUNet)
- nnU-Net style experiment planning (fingerprint, plans)
- Preprocessing (cropping, normalization, resampling)
- Training and sliding window inference
- Evaluation metrics (Dice, IoU, HD95)
- Validation of the report post (front matter, images, code blocks)
"""

__version__ = "1.0.0"
