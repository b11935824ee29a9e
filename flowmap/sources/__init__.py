"""Source readers producing Row objects."""
