"""Operator chat channel: transport interface, Telegram transport and message rendering."""
