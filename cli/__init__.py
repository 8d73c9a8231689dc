"""Speech Alignment Training Framework - command line entry points."""
