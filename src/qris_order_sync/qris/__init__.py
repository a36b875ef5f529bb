from .decoder import amount_as_rupiah, decode

__all__ = ["decode", "amount_as_rupiah"]
