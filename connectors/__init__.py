"""
Connector abstraction over heterogeneous data sources.

Importing this package registers every built-in connector:

    postgres / postgresql / mysql / sqlite  -> SQLConnector
    graphql                                  -> GraphQLConnector
    hubspot                                  -> HubSpotConnector
    salesforce                               -> SalesforceConnector
    rest                                     -> RESTConnector

Usage:
    from connectors import create_connector

    async with create_connector(config) as connector:
        result = await connector.execute_query(sql)
"""

from connectors.base import BaseConnector
from connectors.registry import create_connector, register_connector, supported_types
from connectors.projection import execute_projection, parse_select
from connectors.sql_connector import SQLConnector
from connectors.graphql_connector import GraphQLConnector
from connectors.hubspot_connector import HubSpotConnector
from connectors.salesforce_connector import SalesforceConnector
from connectors.rest_connector import RESTConnector

__all__ = [
    "BaseConnector",
    "create_connector",
    "register_connector",
    "supported_types",
    "execute_projection",
    "parse_select",
    "SQLConnector",
    "GraphQLConnector",
    "HubSpotConnector",
    "SalesforceConnector",
    "RESTConnector",
]
