"""
HydroMonitor Backend
====================

This is the Python package for the hydroponic telemetry API.

HOW IT'S ORGANIZED:
------------------
- models/    = Data structures (readings, status row, alert settings, DB tables)
- services/  = Workers (decode hex payloads, fetch upstream, store readings)
- routers/   = API endpoints (the doors into our app)
- utils/     = Small parsing helpers
- main.py    = Puts it all together and starts the server
"""
