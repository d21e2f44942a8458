"""Arch Linux ARM Image Generator - bootable SD card images for ARM boards.

This package provisions raw disk images for single-board computers: it
downloads a root filesystem tarball, lays out a boot + root partition image on
a loop device, extracts the tarball and configures the result inside a chroot,
customized by platform and environment profiles.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
