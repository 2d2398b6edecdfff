"""
Image Keywording Package

Concurrent batch pipeline that turns uploaded images into stock-photo
metadata (title, description, keywords, category) through an
OpenRouter-compatible vision model.
"""

__version__ = "1.0.0"
__author__ = "Keywording Team"
