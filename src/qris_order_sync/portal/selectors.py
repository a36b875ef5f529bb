from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class StorefrontTexts:
    """
    The storefront is a consumer web UI; labels and layout may change over time.
    Keep all UI text hooks and selectors here for easy maintenance.
    """

    # Payment list ("Menunggu Pembayaran")
    total_payment_label: str = "Total Pembayaran"
    deadline_label: str = "Bayar sebelum"
    payment_method_label: str = "QRIS"

    # Order list
    processed_status_label: str = "Diproses"
    total_purchase_label: str = "Total Belanja"

    # Sidebar / header widgets that render amounts but are never order data.
    sidebar_keywords: tuple[str, ...] = ("Saldo", "GoPay", "Tokopedia Card", "Kotak Masuk")
    # The order list additionally shows chat and review widgets next to order cards.
    order_list_sidebar_keywords: tuple[str, ...] = ("Chat", "Ulasan")

    # Main content region (excludes the account sidebar) when the page marks one.
    main_content_selector: str = '[class*="content"], [class*="main"], main, [role="main"]'

    # URL fragments that mean we were bounced to the sign-in surface.
    login_url_markers: tuple[str, ...] = ("login",)


# Amounts at or below this are UI chrome (shipping fees, badges, vouchers), not order totals.
DEFAULT_NOISE_FLOOR = 10_000
# Upper sanity bound for the loose payment-list scan.
DEFAULT_AMOUNT_CEILING = 100_000_000
