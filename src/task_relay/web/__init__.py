"""HTTP surface: webhook intake, write-back and status."""
