"""Ubuntu Autoinstaller - build unattended-install Ubuntu server ISOs.

This package orchestrates the customization of an official Ubuntu
live-server ISO: it injects autoinstall user-data, optional offline
packages and kernel tweaks, then repackages the image and tracks the
whole build as an observable, cancellable job.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
