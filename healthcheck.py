#!/usr/bin/env python3
"""
Docker healthcheck script for DDSU Modbus Monitor

Checks:
1. Health status file exists and is recent
2. Status is 'healthy' or 'waiting' (polling, first reading pending)
3. MQTT connection is active (if enabled)

Exit codes:
0 = healthy
1 = unhealthy
"""

import os
import sys
import time

HEALTH_FILE = os.environ.get('HEALTH_FILE', '/tmp/ddsu_health')
MAX_AGE_SECONDS = 120
ACCEPTED_STATES = ('healthy', 'waiting')


def _fields(lines) -> dict:
    """Parse the 'key:value' lines after timestamp and status."""
    fields = {}
    for line in lines[2:]:
        key, sep, value = line.strip().partition(':')
        if sep:
            fields[key] = value
    return fields


def check_health(health_file: str = HEALTH_FILE) -> int:
    """Check if the service is healthy"""
    if not os.path.exists(health_file):
        print("Health file not found - service may still be starting")
        return 1

    try:
        with open(health_file, 'r') as f:
            lines = f.readlines()

        if len(lines) < 2:
            print("Invalid health file format")
            return 1

        age = time.time() - int(lines[0].strip())
        status = lines[1].strip()
        fields = _fields(lines)

        if age > MAX_AGE_SECONDS:
            print(f"Health file is stale ({int(age)}s old, max {MAX_AGE_SECONDS}s)")
            return 1

        if status not in ACCEPTED_STATES:
            print(f"Service status: {status}")
            return 1

        if fields.get('mqtt') == 'False':
            print("MQTT disconnected")
            return 1

        if status == 'waiting':
            print(f"Waiting for first reading - last check {int(age)}s ago")
        else:
            print(f"Healthy (last check {int(age)}s ago, uptime {fields.get('uptime', '?')})")
        return 0

    except (OSError, ValueError) as e:
        print(f"Error reading health file: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(check_health())
