"""mailpilot: inbox triage with model-drafted replies and chat confirmations."""

__version__ = "0.1.0"
