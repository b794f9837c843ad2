"""OpEx Hub workflow front-end."""
