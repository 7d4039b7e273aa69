"""Client-side pickup verification workflows for DriveDrop."""
