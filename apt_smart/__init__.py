"""apt-smart - guided distribution upgrader for Debian, Ubuntu and Armbian."""

try:
    from apt_smart._version import version as __version__
except ImportError:
    __version__ = "0.0.0.dev0"
