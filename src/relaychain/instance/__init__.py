"""Proxy instance runtime: topology, backends, processes, and lifecycle."""
