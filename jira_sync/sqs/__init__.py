"""SQS queue consumers"""
