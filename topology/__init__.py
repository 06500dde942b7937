"""Architecture graph model and topology inference."""
