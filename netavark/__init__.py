"""Container network setup: bridge, macvlan/ipvlan and plugin drivers over netlink."""

__version__ = "0.1.0"