"""Kernel Build Pipeline - build and publish kernel artifacts per target.

This package orchestrates the kernel build toolchain, Debian packaging and
artifact-store uploads for a set of architecture/flavour targets, and
combines the per-target upload metadata into a single Bazel manifest.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
