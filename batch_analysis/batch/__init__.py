"""Remote batch queue access: templating, resources, PBS client."""
