"""
inbox_triage package

Gmail inbox triage: scheduled classification, draft replies, labels,
processed-message dedup and activity digests.
"""

__all__ = [
    "config",
    "logging_config",
    "models",
    "database",
    "storage",
    "gmail_client",
    "llm_client",
    "prompts",
    "classifier",
    "rules",
    "scheduling",
    "triage_engine",
    "digest",
    "cron",
    "security",
    "api",
    "cli",
]
