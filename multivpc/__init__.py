"""VPC interconnection through NAT-gateway tunnels, gateway failover, ECMP routes and DNS forwarding."""

__version__ = "0.1.0"