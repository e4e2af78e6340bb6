# vmplane/repositories/exceptions.py

class RepositoryError(Exception):
    """메타데이터 DB 읽기/쓰기 실패 시"""
    pass
