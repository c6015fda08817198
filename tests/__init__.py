"""PromptVault test suite."""
