"""Parallel test orchestration: retries, scheduling and run aggregation.

A run is discover -> consult the result cache per job -> execute misses on
a fixed pool of workers with bounded retries -> store outcomes -> summarize.
Workers are plain identifiers; what a worker *is* (a device, an emulator, a
local slot) is up to the executor the caller plugs in.
"""
