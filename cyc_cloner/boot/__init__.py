"""OS classification and bootloader repair."""
