from kitimer import create_app, socketio

app = create_app()

if __name__ == '__main__':
    # Use SocketIO server so viewers receive timer_update pushes in dev
    socketio.run(app, debug=True)
