"""Core package of cryptupload."""
