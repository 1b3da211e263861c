"""Daily camera stream capture, segment merge and remote upload."""
