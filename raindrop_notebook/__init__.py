"""Collect tagged Raindrop bookmarks into a single NotebookLM note."""

__all__ = [
    "config",
    "models",
    "rate_limiter",
    "fetcher",
    "collector",
    "text_extractor",
    "note_formatter",
    "raindrop_client",
    "notebook_client",
    "submitter",
    "result_writer",
    "mailer",
    "orchestrator",
]
