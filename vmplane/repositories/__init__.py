from .exceptions import RepositoryError
