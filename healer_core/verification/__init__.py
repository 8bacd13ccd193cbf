from .service import PageSnapshot, SiteVerifier

__all__ = ["PageSnapshot", "SiteVerifier"]
