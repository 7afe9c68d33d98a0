SERVICE_NAME = "amqp-tools"
