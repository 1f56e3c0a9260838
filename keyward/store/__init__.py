"""aiosqlite store base class."""
