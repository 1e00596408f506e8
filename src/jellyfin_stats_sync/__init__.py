"""Mirror Jellyfin users, libraries, items, activities and playback sessions into SQLite."""

__version__ = "0.1.0"
