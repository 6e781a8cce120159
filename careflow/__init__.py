from dotenv import load_dotenv, find_dotenv

# Centralize environment loading for the `careflow` package. Any module that
# imports `careflow` sees the .env values.
load_dotenv(find_dotenv())

__all__ = []
