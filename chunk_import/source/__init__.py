"""Row sources and heading resolution."""
