"""Live auction engine for cricket team drafts."""
