"""SQLite persistence shared by the controller and the local pipeline runner."""
