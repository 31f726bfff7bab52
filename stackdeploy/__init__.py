"""stackdeploy — environment-isolated provisioning for a cloud application stack."""

__version__ = "0.1.0"
