"""Processing queue — priority admission under concurrency and daily cost caps."""
