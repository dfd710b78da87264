"""Service layer: orchestration across several disks."""
