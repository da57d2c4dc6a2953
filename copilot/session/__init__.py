"""Recording session lifecycle, persistence and post-session notes."""
