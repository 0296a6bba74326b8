"""Contract e-signature and evidence workflow engine"""

__version__ = "0.1.0"
