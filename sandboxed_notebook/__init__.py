"""Run a notebook server under a deny-by-default macOS seatbelt policy."""
