"""VM Image Generator - base and variant disk images for an OS distribution.

This package builds one bootstrapped base image, derives customized variants
(cloud images and the like) from it, and can run the whole pipeline inside a
throwaway QEMU guest driven over its serial console.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
