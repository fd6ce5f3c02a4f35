"""LLM-backed pipeline agents: analyze, plan, edit, test and self-review."""
