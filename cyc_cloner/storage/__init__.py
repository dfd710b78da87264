"""Block devices, mounts, external tools and the imaging engine."""
