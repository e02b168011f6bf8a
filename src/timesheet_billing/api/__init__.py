"""HTTP API for the timesheet billing engine."""
