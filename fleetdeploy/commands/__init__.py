"""fleetdeploy CLI commands"""
