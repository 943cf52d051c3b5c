"""
socit daemon package.

Keeps a battery-backed Sunsynk hybrid inverter charged enough to ride
through scheduled load-shedding. Reads the battery state over Modbus,
fetches the outage forecast from EskomSePush, projects the battery level
forward and writes the minimum state-of-charge programs back to the
inverter.

CHANGELOG:
- 2026-10-19: Initial creation

TODO:
- None
"""
