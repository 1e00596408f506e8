"""Entity sync pipelines and orchestration."""
