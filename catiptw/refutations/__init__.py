from .iptw import IPTWRefutationReport
from ._check import RefutationCheck

__all__ = ["IPTWRefutationReport", "RefutationCheck"]
