"""Loading resource declarations from YAML."""

from strata.declarations.loader import load_declaration, parse_declaration, parse_resource

__all__ = ["load_declaration", "parse_declaration", "parse_resource"]
