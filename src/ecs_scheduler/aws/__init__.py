"""boto3 implementations of the scheduler's collaborator interfaces."""
