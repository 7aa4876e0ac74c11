from .image_cache import DiskImageCache

__all__ = ["DiskImageCache"]
