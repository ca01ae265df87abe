"""Egress IP address management for OpenShift SDN clusters."""
