"""
meshecho

Test harness for echo service topologies in a service mesh: builds groups
of echo instances across clusters, waits until every instance can reach
every other one, and exercises retried calls and sidecar config waits.
"""

__version__ = "1.0.0"
