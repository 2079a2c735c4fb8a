"""Voice presence agent: keeps one Discord identity parked in a voice channel."""
