"""Schedules, cron triggers and retry handling."""
