from tapfix.rewrite.engine import RewriteEngine
from tapfix.rewrite.model import (
    Bucket,
    CallbackKind,
    FileRewrite,
    Partition,
    RewriteConfig,
    RewritePlan,
    RewriteRequest,
    RuntimeSymbols,
    SiteReport,
    SiteStatus,
    TextEdit,
)

__all__ = [
    "Bucket",
    "CallbackKind",
    "FileRewrite",
    "Partition",
    "RewriteConfig",
    "RewriteEngine",
    "RewritePlan",
    "RewriteRequest",
    "RuntimeSymbols",
    "SiteReport",
    "SiteStatus",
    "TextEdit",
]
