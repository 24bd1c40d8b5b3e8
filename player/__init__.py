"""Client-side offline cache and its connection to the library server."""
