"""Attribute Protocol: PDUs, client, attribute database and server."""