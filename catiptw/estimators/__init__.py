from .iptw import CategoricalIPTW, IPTWResult

__all__ = ["CategoricalIPTW", "IPTWResult"]
