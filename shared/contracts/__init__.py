"""Realtime event contracts shared between the control plane and its observers."""
