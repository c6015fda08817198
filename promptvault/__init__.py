"""PromptVault - versioned backups for a prompt collection"""

__version__ = "1.0.0"
