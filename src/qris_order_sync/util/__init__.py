from .dates import parse_deadline
from .money import format_rupiah, rupiah_to_int

__all__ = ["parse_deadline", "rupiah_to_int", "format_rupiah"]
