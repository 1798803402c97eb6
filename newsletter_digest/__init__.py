"""Newsletter ingestion, link resolution and AI digest pipeline."""

__all__ = [
    "config",
    "models",
    "errors",
    "store",
    "operation_log",
    "gmail_client",
    "link_extractor",
    "link_resolver",
    "prompts",
    "summarizer",
    "processor",
    "scheduler",
]
