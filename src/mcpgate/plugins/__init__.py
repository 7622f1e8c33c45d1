"""Plugin process handling: installation, stdio protocol and process control."""
