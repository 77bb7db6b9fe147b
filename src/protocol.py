"""
Generated gRPC modules for the kubelet plugin registration API and CSI.

The .proto files ship in the `protos` package and are compiled by
grpcio-tools when this module is first imported, giving the usual
`*_pb2` message modules and `*_pb2_grpc` stubs, servicers and
`add_*Servicer_to_server` helpers.
"""

import grpc

registration_pb2, registration_pb2_grpc = grpc.protos_and_services(
    "protos/pluginregistration.proto"
)
csi_pb2, csi_pb2_grpc = grpc.protos_and_services("protos/csi.proto")

# PluginInfo.type for CSI drivers
CSI_PLUGIN = "CSIPlugin"
