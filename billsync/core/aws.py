from __future__ import annotations

from functools import lru_cache

import boto3

from .settings import S


@lru_cache(maxsize=1)
def aws_session() -> boto3.session.Session:
    return boto3.session.Session(region_name=S.aws_region or "us-east-1")


def cognito_client():
    region = S.cognito_region or S.aws_region
    return aws_session().client("cognito-idp", region_name=region)


def ddb():
    return aws_session().resource("dynamodb")
