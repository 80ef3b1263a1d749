"""
quick-ocp

Brings up a single node OpenShift Local (CRC) cluster on a CI runner

Supports the following commands:

* run: Resolves the CRC release for the requested OpenShift version, downloads it from the OpenShift mirror with a
container image cache as failover, starts CRC inside the runner's CPU, memory and disk budget, waits for the cluster
to be ready and scales down components CI jobs do not need.

* resolve, install, wait, trim: The individual stages of `run`, for workflows that want to drive them separately.
"""
__version__ = "0.1.0"
