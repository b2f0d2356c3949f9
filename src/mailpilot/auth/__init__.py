"""Microsoft identity platform authentication for the Graph mailbox."""
