"""SQL schema migrations, applied in filename order by migrate.py."""
