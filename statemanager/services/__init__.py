"""
State Manager Services

1. BMC State Service - BMC readiness and reboot requests
2. Host State Service - Host power transitions (one process per host)
3. Configurable State Service - Rule-driven readiness categories
4. System tools - Startup host check and power restore policy
"""
