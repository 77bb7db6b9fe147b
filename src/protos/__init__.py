"""Protocol buffer definitions compiled at import time by grpcio-tools."""
