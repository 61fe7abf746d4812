"""Text normalization shared by persistence and enrichment."""

import unicodedata


def normalize_product_name(name: str) -> str:
    """
    Fold a product name to its lookup key.

    NFKC (full-width to half-width), lowercase, then keep alphanumerics
    only, so "ＲＧ 1/144 ガンダム" and "rg 1/144 ガンダム" share one key.
    """
    folded = unicodedata.normalize("NFKC", name).lower()
    return "".join(c for c in folded if c.isalnum())
