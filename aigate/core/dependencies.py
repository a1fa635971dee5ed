from fastapi import Request

from aigate.gateway.gateway import AdmissionGateway
from aigate.gateway.types import AIProvider
from aigate.gateway.vendor_adapters import BaseVendorAdapter


def get_gateway(request: Request) -> AdmissionGateway:
    return request.app.state.gateway


def get_adapters(request: Request) -> dict[AIProvider, BaseVendorAdapter]:
    return request.app.state.adapters
