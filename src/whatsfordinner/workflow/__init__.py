"""Dinner workflow domain: votes, dinners, channel state and scheduling."""
