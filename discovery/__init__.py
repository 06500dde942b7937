"""Tag-based AWS resource discovery and deep inspection."""
