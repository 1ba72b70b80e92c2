"""
roomschedule: harvests the daily room/event schedule into a per-day
snapshot and a deduplicated cumulative log of lectures and tutorials.
"""
