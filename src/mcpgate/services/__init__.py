"""
Services package for mcpgate.

Business logic for the operation router and the components it drives:
billing ledger, result cache, validator, deployer and registry client.
"""
