"""Polls — lifecycle, exclusive voting and tallies."""
