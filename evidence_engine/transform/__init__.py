"""Table transformation and structuring of extracted evidence."""
