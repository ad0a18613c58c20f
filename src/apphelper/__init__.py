"""apphelper: application lifecycle helper and Homebrew update scheduler for macOS."""

__version__ = "1.0.0"
