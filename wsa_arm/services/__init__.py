"""Pipeline components that plan, install and finalize images."""
