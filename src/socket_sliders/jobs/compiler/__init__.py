"""Geometry compiler implementations."""

from socket_sliders.jobs.compiler.base import CompileRequest, CompileResult, GeometryCompiler
from socket_sliders.jobs.compiler.openscad import OpenScadCompiler, build_openscad_parameters

__all__ = [
    "CompileRequest",
    "CompileResult",
    "GeometryCompiler",
    "OpenScadCompiler",
    "build_openscad_parameters",
]
