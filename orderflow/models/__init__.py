"""Domain models and the aiosqlite-backed document stores."""
