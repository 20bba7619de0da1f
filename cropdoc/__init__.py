"""CropDoc - crop disease diagnosis sessions"""

__version__ = "1.0.0"
