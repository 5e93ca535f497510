"""
vmsync: keep an ingestion platform's inventory annotations in step with vSphere.

Exports guest address, segment label, instance name and custom-field tags
for every virtual machine in a datacenter, then optionally follows change
events and ships deltas on a fixed cadence.
"""

__version__ = "0.1.0"
