"""
SeaweedFS Service Broker

An Open Service Broker API implementation that provisions SeaweedFS object
storage: buckets on a shared cluster, or dedicated clusters deployed on demand
through a BOSH director, with per-binding IAM credentials.
"""

__version__ = "0.1.0"
__author__ = "SeaweedFS Broker"
