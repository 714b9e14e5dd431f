"""dnsagg package"""

# Re-export the stores subpackage so dotted backend paths like
# 'dnsagg.stores.*' resolve for tooling that walks attributes.
from . import stores as stores
