"""Core building blocks: flags, caching, invalidation, audit."""
