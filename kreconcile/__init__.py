"""Building blocks for resource reconcilers: request contexts, reference tracking,
list helpers and admission webhook adapters."""

__version__ = "0.1.0"
__all__ = ["clock", "tracker", "util", "webhook"]