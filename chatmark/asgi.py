from asgiref.wsgi import WsgiToAsgi

from chatmark import create_app

app = WsgiToAsgi(create_app())
