"""Run-time context shared by every pipeline."""
