"""
Asset references

Covers, proofs, swatches and texture images are stored as opaque refs
(a file key or an absolute URL). The service never loads the files; it only
turns refs into URLs for the client.
"""
from typing import Optional

SIZE_HINTS = ("thumbnail", "medium", "large", "full")


class AssetResolver:
    def __init__(self, base_url: str = ""):
        self.base_url = base_url.rstrip("/")

    def resolve_url(self, ref: Optional[str], size_hint: str = "full") -> str:
        """Return a URL for `ref`, or '' when there is nothing to show."""
        if not ref:
            return ""
        ref = str(ref).strip()
        if ref.startswith(("http://", "https://", "//")):
            return ref
        if not self.base_url:
            return ""
        if size_hint not in SIZE_HINTS or size_hint == "full":
            return f"{self.base_url}/{ref.lstrip('/')}"
        return f"{self.base_url}/{size_hint}/{ref.lstrip('/')}"
