"""HTTP API for the grading-sync hook and taxonomy administration."""
